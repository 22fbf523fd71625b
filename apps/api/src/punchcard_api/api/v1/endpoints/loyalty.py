"""Internal API for punch-card intake, redemption and operator reads."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from punchcard_api.api.dependencies.security import require_intake_api_key
from punchcard_api.db.session import get_session
from punchcard_api.models.loyalty import (
    LoyaltyPurchaseEvent,
    LoyaltyRedemption,
    LoyaltyReward,
    RedemptionType,
    RewardStatus,
)
from punchcard_api.models.loyalty_audit import AuditAction, LoyaltyAuditLog
from punchcard_api.services.loyalty import (
    DetectionResult,
    LoyaltyError,
    LoyaltyNotFoundError,
    LoyaltyQueryService,
    LoyaltyValidationError,
    OrderIntakeService,
    RedemptionDetector,
    RewardStateConflictError,
    RewardStateMachine,
    RewardSyncOrchestrator,
    default_pos_client_factory,
)
from punchcard_api.services.loyalty.pos_client import PosClientFactory


router = APIRouter(
    prefix="/loyalty/tenants/{tenant_id}",
    tags=["loyalty"],
    dependencies=[Depends(require_intake_api_key)],
)


def get_pos_client_factory() -> PosClientFactory:
    return default_pos_client_factory


def _http_error(error: LoyaltyError) -> HTTPException:
    if isinstance(error, LoyaltyValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
    if isinstance(error, LoyaltyNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, RewardStateConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))


class OrderIntakeRequest(BaseModel):
    order: dict[str, Any] = Field(..., description="POS order payload (snake_case or camelCase keys)")
    customerId: Optional[str] = Field(None, description="Customer override when the order carries none")
    source: str = Field("webhook", description="Intake source tag")
    customerSource: str = Field("order", description="How the customer id was resolved upstream")
    detectRedemption: bool = Field(True, description="Run redemption detection after intake")


class DetectionRequest(BaseModel):
    order: dict[str, Any]
    customerId: Optional[str] = None
    dryRun: bool = False


class IntakeLineResponse(BaseModel):
    lineItemUid: Optional[str]
    variationId: Optional[str]
    quantity: int
    recorded: bool
    reason: Optional[str]
    rewardStatus: Optional[str]
    currentQuantity: Optional[int]
    requiredQuantity: Optional[int]


class DetectionResponse(BaseModel):
    detected: bool
    dryRun: bool
    rewardId: Optional[UUID]
    customerId: Optional[str]
    method: Optional[str]
    redeemedValueCents: Optional[int]
    redeemedVariationId: Optional[str]
    redemptionId: Optional[UUID]
    error: Optional[str]


class OrderIntakeResponse(BaseModel):
    orderId: str
    alreadyProcessed: bool
    resultType: Optional[str]
    customerId: Optional[str]
    qualifyingItems: int
    totalLineItems: int
    lines: List[IntakeLineResponse]
    earnedRewardIds: List[UUID]
    redemption: Optional[DetectionResponse]


class RedeemRequest(BaseModel):
    orderId: Optional[str] = None
    customerId: Optional[str] = None
    redeemedBy: Optional[str] = Field(None, description="Operator performing the redemption")
    adminNotes: Optional[str] = None
    redeemedVariationId: Optional[str] = None
    redeemedValueCents: Optional[int] = Field(None, ge=0)
    locationId: Optional[str] = None


class RewardResponse(BaseModel):
    id: UUID
    offerId: UUID
    customerId: str
    status: str
    currentQuantity: int
    requiredQuantity: int
    windowStartDate: Optional[date]
    windowEndDate: Optional[date]
    earnedAt: Optional[datetime]
    redeemedAt: Optional[datetime]
    revokedAt: Optional[datetime]
    revocationReason: Optional[str]
    posObjectIds: dict[str, Optional[str]]
    posSyncedAt: Optional[datetime]


class LockedEventResponse(BaseModel):
    id: UUID
    orderId: Optional[str]
    variationId: str
    quantity: int
    unitPriceCents: int
    purchasedAt: datetime
    windowEndDate: date
    splitRole: str
    splitSequence: int
    lineageId: Optional[UUID]
    originalEventId: Optional[UUID]


class RewardDetailResponse(RewardResponse):
    offerName: Optional[str]
    lockedEvents: List[LockedEventResponse]


class RedemptionResponse(BaseModel):
    id: UUID
    rewardId: UUID
    offerId: UUID
    customerId: str
    redemptionType: str
    detectionMethod: Optional[str]
    orderId: Optional[str]
    redeemedVariationId: Optional[str]
    redeemedItemName: Optional[str]
    redeemedVariationName: Optional[str]
    redeemedValueCents: Optional[int]
    redeemedBy: Optional[str]
    redeemedAt: datetime


class AuditEntryResponse(BaseModel):
    id: UUID
    action: str
    offerId: Optional[UUID]
    rewardId: Optional[UUID]
    purchaseEventId: Optional[UUID]
    redemptionId: Optional[UUID]
    customerId: Optional[str]
    orderId: Optional[str]
    oldState: Optional[str]
    newState: Optional[str]
    oldQuantity: Optional[int]
    newQuantity: Optional[int]
    triggeredBy: str
    actorId: Optional[str]
    details: Optional[dict[str, Any]]
    createdAt: datetime


class AuditPageResponse(BaseModel):
    entries: List[AuditEntryResponse]
    total: int
    limit: int
    offset: int


class CustomerSummaryResponse(BaseModel):
    offerId: UUID
    offerName: str
    currentQuantity: int
    requiredQuantity: int
    windowStartDate: Optional[date]
    windowEndDate: Optional[date]
    hasEarnedReward: bool
    earnedRewardId: Optional[UUID]
    totalLifetimePurchases: int
    totalRewardsEarned: int
    totalRewardsRedeemed: int
    lastPurchaseAt: Optional[datetime]


class SyncValidationResponse(BaseModel):
    rewardId: UUID
    customerId: str
    valid: bool
    issue: Optional[str]
    fixed: bool
    fixAction: Optional[str]
    details: dict[str, Any]


def _serialize_reward(reward: LoyaltyReward) -> dict[str, Any]:
    return {
        "id": reward.id,
        "offerId": reward.offer_id,
        "customerId": reward.customer_id,
        "status": reward.status.value,
        "currentQuantity": reward.current_quantity,
        "requiredQuantity": reward.required_quantity,
        "windowStartDate": reward.window_start_date,
        "windowEndDate": reward.window_end_date,
        "earnedAt": reward.earned_at,
        "redeemedAt": reward.redeemed_at,
        "revokedAt": reward.revoked_at,
        "revocationReason": reward.revocation_reason,
        "posObjectIds": reward.pos_object_ids,
        "posSyncedAt": reward.pos_synced_at,
    }


def _serialize_event(event: LoyaltyPurchaseEvent) -> LockedEventResponse:
    return LockedEventResponse(
        id=event.id,
        orderId=event.order_id,
        variationId=event.variation_id,
        quantity=event.quantity,
        unitPriceCents=event.unit_price_cents,
        purchasedAt=event.purchased_at,
        windowEndDate=event.window_end_date,
        splitRole=event.split_role.value,
        splitSequence=event.split_sequence,
        lineageId=event.lineage_id,
        originalEventId=event.original_event_id,
    )


def _serialize_redemption(redemption: LoyaltyRedemption) -> RedemptionResponse:
    return RedemptionResponse(
        id=redemption.id,
        rewardId=redemption.reward_id,
        offerId=redemption.offer_id,
        customerId=redemption.customer_id,
        redemptionType=redemption.redemption_type.value,
        detectionMethod=redemption.detection_method.value if redemption.detection_method else None,
        orderId=redemption.order_id,
        redeemedVariationId=redemption.redeemed_variation_id,
        redeemedItemName=redemption.redeemed_item_name,
        redeemedVariationName=redemption.redeemed_variation_name,
        redeemedValueCents=redemption.redeemed_value_cents,
        redeemedBy=redemption.redeemed_by,
        redeemedAt=redemption.redeemed_at,
    )


def _serialize_audit(entry: LoyaltyAuditLog) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        action=entry.action,
        offerId=entry.offer_id,
        rewardId=entry.reward_id,
        purchaseEventId=entry.purchase_event_id,
        redemptionId=entry.redemption_id,
        customerId=entry.customer_id,
        orderId=entry.order_id,
        oldState=entry.old_state,
        newState=entry.new_state,
        oldQuantity=entry.old_quantity,
        newQuantity=entry.new_quantity,
        triggeredBy=entry.triggered_by.value,
        actorId=entry.actor_id,
        details=entry.details,
        createdAt=entry.created_at,
    )


def _serialize_detection(result: DetectionResult) -> DetectionResponse:
    return DetectionResponse(
        detected=result.detected,
        dryRun=result.dry_run,
        rewardId=result.reward_id,
        customerId=result.customer_id,
        method=result.method.value if result.method else None,
        redeemedValueCents=result.redeemed_value_cents,
        redeemedVariationId=result.redeemed_variation_id,
        redemptionId=result.redemption.redemption_id if result.redemption else None,
        error=result.error,
    )


@router.post("/orders", response_model=OrderIntakeResponse)
async def ingest_order(
    tenant_id: UUID,
    payload: OrderIntakeRequest,
    db: AsyncSession = Depends(get_session),
    client_factory: PosClientFactory = Depends(get_pos_client_factory),
) -> OrderIntakeResponse:
    """Record qualifying purchases for an order, then look for a redeemed reward."""

    sync = RewardSyncOrchestrator(db, client_factory=client_factory)
    try:
        result = await OrderIntakeService(db, sync=sync).process_order(
            tenant_id,
            payload.order,
            customer_id=payload.customerId,
            source=payload.source,
            customer_source=payload.customerSource,
        )
    except LoyaltyError as error:
        await db.rollback()
        raise _http_error(error) from error

    detection: DetectionResult | None = None
    if payload.detectRedemption and not result.already_processed:
        detector = RedemptionDetector(db, rewards=RewardStateMachine(db, sync=sync))
        detection = await detector.detect_redemption(payload.order, tenant_id, customer_id=payload.customerId)

    return OrderIntakeResponse(
        orderId=result.order_id,
        alreadyProcessed=result.already_processed,
        resultType=result.result_type.value if result.result_type else None,
        customerId=result.customer_id,
        qualifyingItems=result.qualifying_items,
        totalLineItems=result.total_line_items,
        lines=[
            IntakeLineResponse(
                lineItemUid=line.line_item_uid,
                variationId=line.variation_id,
                quantity=line.quantity,
                recorded=line.recorded,
                reason=line.reason,
                rewardStatus=line.reward_status.value if line.reward_status else None,
                currentQuantity=line.current_quantity,
                requiredQuantity=line.required_quantity,
            )
            for line in result.lines
        ],
        earnedRewardIds=result.earned_reward_ids,
        redemption=_serialize_detection(detection) if detection else None,
    )


@router.post("/orders/detect-redemption", response_model=DetectionResponse)
async def detect_order_redemption(
    tenant_id: UUID,
    payload: DetectionRequest,
    db: AsyncSession = Depends(get_session),
    client_factory: PosClientFactory = Depends(get_pos_client_factory),
) -> DetectionResponse:
    sync = RewardSyncOrchestrator(db, client_factory=client_factory)
    detector = RedemptionDetector(db, rewards=RewardStateMachine(db, sync=sync))
    result = await detector.detect_redemption(
        payload.order, tenant_id, dry_run=payload.dryRun, customer_id=payload.customerId
    )
    return _serialize_detection(result)


@router.post("/rewards/{reward_id}/redeem", response_model=RedemptionResponse)
async def redeem_reward(
    tenant_id: UUID,
    reward_id: UUID,
    payload: RedeemRequest,
    db: AsyncSession = Depends(get_session),
    client_factory: PosClientFactory = Depends(get_pos_client_factory),
) -> RedemptionResponse:
    """Manually redeem an earned reward on behalf of an operator."""

    machine = RewardStateMachine(db, sync=RewardSyncOrchestrator(db, client_factory=client_factory))
    try:
        outcome = await machine.redeem_reward(
            tenant_id,
            reward_id,
            order_id=payload.orderId,
            customer_id=payload.customerId,
            redemption_type=RedemptionType.MANUAL_ADMIN,
            redeemed_variation_id=payload.redeemedVariationId,
            redeemed_value_cents=payload.redeemedValueCents,
            redeemed_by=payload.redeemedBy,
            admin_notes=payload.adminNotes,
            location_id=payload.locationId,
        )
    except LoyaltyError as error:
        raise _http_error(error) from error

    redemption = await db.get(LoyaltyRedemption, outcome.redemption_id)
    return _serialize_redemption(redemption)


@router.get("/rewards", response_model=List[RewardResponse])
async def list_rewards(
    tenant_id: UUID,
    status_filter: Optional[str] = Query(None, alias="status"),
    customer_id: Optional[str] = Query(None, alias="customerId"),
    offer_id: Optional[UUID] = Query(None, alias="offerId"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> List[RewardResponse]:
    reward_status: RewardStatus | None = None
    if status_filter:
        try:
            reward_status = RewardStatus(status_filter)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported reward status: {status_filter}") from exc

    rewards = await LoyaltyQueryService(db).list_rewards(
        tenant_id, status=reward_status, customer_id=customer_id, offer_id=offer_id, limit=limit, offset=offset
    )
    return [RewardResponse(**_serialize_reward(reward)) for reward in rewards]


@router.get("/rewards/{reward_id}", response_model=RewardDetailResponse)
async def get_reward(
    tenant_id: UUID,
    reward_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> RewardDetailResponse:
    try:
        detail = await LoyaltyQueryService(db).get_reward(tenant_id, reward_id)
    except LoyaltyError as error:
        raise _http_error(error) from error

    return RewardDetailResponse(
        **_serialize_reward(detail.reward),
        offerName=detail.offer_name,
        lockedEvents=[_serialize_event(event) for event in detail.locked_events],
    )


@router.get("/redemptions", response_model=List[RedemptionResponse])
async def list_redemptions(
    tenant_id: UUID,
    customer_id: Optional[str] = Query(None, alias="customerId"),
    offer_id: Optional[UUID] = Query(None, alias="offerId"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> List[RedemptionResponse]:
    redemptions = await LoyaltyQueryService(db).list_redemptions(
        tenant_id, customer_id=customer_id, offer_id=offer_id, limit=limit, offset=offset
    )
    return [_serialize_redemption(redemption) for redemption in redemptions]


@router.get("/audit-logs", response_model=AuditPageResponse)
async def list_audit_logs(
    tenant_id: UUID,
    action: Optional[str] = Query(None),
    customer_id: Optional[str] = Query(None, alias="customerId"),
    offer_id: Optional[UUID] = Query(None, alias="offerId"),
    reward_id: Optional[UUID] = Query(None, alias="rewardId"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> AuditPageResponse:
    audit_action: AuditAction | None = None
    if action:
        try:
            audit_action = AuditAction(action)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported audit action: {action}") from exc

    page = await LoyaltyQueryService(db).list_audit_entries(
        tenant_id,
        action=audit_action,
        customer_id=customer_id,
        offer_id=offer_id,
        reward_id=reward_id,
        limit=limit,
        offset=offset,
    )
    return AuditPageResponse(
        entries=[_serialize_audit(entry) for entry in page.entries],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/customers/{customer_id}/summary", response_model=List[CustomerSummaryResponse])
async def get_customer_summary(
    tenant_id: UUID,
    customer_id: str,
    db: AsyncSession = Depends(get_session),
) -> List[CustomerSummaryResponse]:
    summaries = await LoyaltyQueryService(db).get_customer_summary(tenant_id, customer_id)
    return [
        CustomerSummaryResponse(
            offerId=item.summary.offer_id,
            offerName=item.offer_name,
            currentQuantity=item.summary.current_quantity,
            requiredQuantity=item.summary.required_quantity,
            windowStartDate=item.summary.window_start_date,
            windowEndDate=item.summary.window_end_date,
            hasEarnedReward=item.summary.has_earned_reward,
            earnedRewardId=item.summary.earned_reward_id,
            totalLifetimePurchases=item.summary.total_lifetime_purchases,
            totalRewardsEarned=item.summary.total_rewards_earned,
            totalRewardsRedeemed=item.summary.total_rewards_redeemed,
            lastPurchaseAt=item.summary.last_purchase_at,
        )
        for item in summaries
    ]


@router.post("/sync/validate", response_model=List[SyncValidationResponse])
async def validate_reward_sync(
    tenant_id: UUID,
    fix: bool = Query(False, description="Recreate or repair drifted POS objects"),
    db: AsyncSession = Depends(get_session),
    client_factory: PosClientFactory = Depends(get_pos_client_factory),
) -> List[SyncValidationResponse]:
    results = await RewardSyncOrchestrator(db, client_factory=client_factory).validate_earned_rewards(
        tenant_id, fix_issues=fix
    )
    return [
        SyncValidationResponse(
            rewardId=result.reward_id,
            customerId=result.customer_id,
            valid=result.valid,
            issue=result.issue,
            fixed=result.fixed,
            fixAction=result.fix_action,
            details=result.details,
        )
        for result in results
    ]
