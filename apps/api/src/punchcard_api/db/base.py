from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    """Declarative base for punchcard models; table names default to the class name."""

    @declared_attr.directive
    def __tablename__(cls) -> str:  # noqa: N805
        return cls.__name__.lower()


def import_models() -> None:
    """Register every model on ``Base.metadata`` (used by alembic and test fixtures)."""

    import punchcard_api.models  # noqa: F401,WPS433
