from fastapi import Header, HTTPException, status

from punchcard_api.core.settings import settings


async def require_intake_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    """Reject callers without the internal API key; open when no key is configured."""

    if not settings.intake_api_key:
        return

    if x_api_key != settings.intake_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
