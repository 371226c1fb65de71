from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status

from .models import (
    CreateRewardRequest,
    CreateUserRequest,
    CreditResult,
    LedgerEntry,
    LedgerPage,
    ReverseRequest,
    Reward,
    RewardResult,
    RewardStatus,
    UpdateUserRequest,
    User,
    UserBalance,
)

router = APIRouter()


def get_services(request: Request):
    return request.app.state.services


@router.post("/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
def create_user(body: CreateUserRequest, services=Depends(get_services)) -> User:
    return services.users.create(body.email, body.name)


@router.get("/users", response_model=list[User], tags=["Users"])
def list_users(services=Depends(get_services)) -> list[User]:
    return services.users.list_all()


@router.get("/users/{user_id}", response_model=User, tags=["Users"])
def get_user(user_id: UUID, services=Depends(get_services)) -> User:
    return services.users.get(user_id)


@router.patch("/users/{user_id}", response_model=User, tags=["Users"])
def rename_user(user_id: UUID, body: UpdateUserRequest, services=Depends(get_services)) -> User:
    return services.users.rename(user_id, body.name)


@router.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: UUID, currency: Optional[str] = None, services=Depends(get_services)) -> UserBalance:
    return services.ledger.get_balance(user_id, currency)


@router.get("/users/{user_id}/ledger", response_model=LedgerPage, tags=["Ledger"])
def get_user_ledger(
    user_id: UUID,
    cursor: Optional[UUID] = None,
    limit: int = Query(default=20, ge=1, le=100),
    services=Depends(get_services),
) -> LedgerPage:
    return services.ledger.list_by_user(user_id, cursor=cursor, limit=limit)


@router.get("/ledger/entries/{entry_id}", response_model=LedgerEntry, tags=["Ledger"])
def get_entry(entry_id: UUID, services=Depends(get_services)) -> LedgerEntry:
    return services.ledger.get_entry(entry_id)


@router.post("/ledger/entries/{entry_id}/reverse", response_model=LedgerEntry, tags=["Ledger"])
def reverse_entry(
    entry_id: UUID, body: Optional[ReverseRequest] = None, services=Depends(get_services),
) -> LedgerEntry:
    return services.rewards.reverse_entry(entry_id, body.reason if body else None)


@router.post("/rewards", response_model=CreditResult, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
def create_reward(body: CreateRewardRequest, response: Response, services=Depends(get_services)) -> CreditResult:
    result = services.rewards.credit(
        referrer_id=body.referrer_id,
        referred_id=body.referred_id,
        amount=body.amount,
        idempotency_key=body.idempotency_key,
        currency=body.currency,
        metadata=body.metadata,
    )
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return result


@router.get("/rewards", response_model=list[Reward], tags=["Rewards"])
def list_rewards(
    status_filter: Optional[RewardStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    services=Depends(get_services),
) -> list[Reward]:
    return services.rewards.list_all(status_filter, limit)


@router.get("/rewards/{reward_id}", response_model=Reward, tags=["Rewards"])
def get_reward(reward_id: UUID, services=Depends(get_services)) -> Reward:
    return services.rewards.get(reward_id)


@router.get("/rewards/{reward_id}/entries", response_model=list[LedgerEntry], tags=["Rewards"])
def get_reward_entries(reward_id: UUID, services=Depends(get_services)) -> list[LedgerEntry]:
    return services.rewards.entries_for(reward_id)


@router.post("/rewards/{reward_id}/confirm", response_model=Reward, tags=["Rewards"])
def confirm_reward(reward_id: UUID, services=Depends(get_services)) -> Reward:
    return services.rewards.confirm(reward_id)


@router.post("/rewards/{reward_id}/pay", response_model=RewardResult, tags=["Rewards"])
def pay_reward(reward_id: UUID, services=Depends(get_services)) -> RewardResult:
    return services.rewards.pay(reward_id)


@router.post("/rewards/{reward_id}/reverse", response_model=RewardResult, tags=["Rewards"])
def reverse_reward(
    reward_id: UUID, body: Optional[ReverseRequest] = None, services=Depends(get_services),
) -> RewardResult:
    return services.rewards.reverse(reward_id, body.reason if body else None)
