"""Storage helpers for provider credentials, pool users and dedicated entries.

These helpers are plain persistence: they never decide eligibility. State
changes that matter to allocation go through the pool manager and ledger.
"""

from __future__ import annotations

from typing import Iterable, cast

from sqlalchemy import case, exists, select

from .database import Base, engine, session_scope
from .models import (
    IN_FLIGHT_STATES,
    Allocation,
    Credential,
    CredentialStatus,
    DedicatedPoolEntry,
    GenerationTask,
    PoolUser,
)


def init_db() -> None:
    """Create tables if they do not already exist."""
    Base.metadata.create_all(bind=engine)


def create_credential(
    provider_family: str,
    api_key: str,
    *,
    label: str = "",
    balance: float = 0.0,
    status: CredentialStatus = CredentialStatus.INACTIVE,
    allocation: Allocation = Allocation.UNASSIGNED,
) -> Credential:
    """Insert a credential row and return it detached."""
    with session_scope() as session:
        credential = Credential(
            provider_family=provider_family,
            api_key=api_key,
            label=label,
            balance=balance,
            status=status.value,
            allocation=allocation.value,
        )
        session.add(credential)
        session.flush()
        return credential


def get_credential(credential_id: int) -> Credential | None:
    with session_scope() as session:
        return session.get(Credential, credential_id)


def list_credentials(provider_family: str | None = None) -> list[Credential]:
    """Return credentials, current first, then by descending balance."""
    current_first = case((Credential.allocation == Allocation.CURRENT.value, 0), else_=1)
    stmt = select(Credential).order_by(current_first, Credential.balance.desc(), Credential.id)
    if provider_family:
        stmt = stmt.where(Credential.provider_family == provider_family)
    with session_scope() as session:
        return cast(list[Credential], session.scalars(stmt).all())


def family_credential_ids(provider_family: str) -> list[int]:
    with session_scope() as session:
        rows = session.scalars(
            select(Credential.id).where(Credential.provider_family == provider_family)
        ).all()
        return [int(row) for row in rows]


def has_in_flight_task(credential_id: int) -> bool:
    """Return True when a non-terminal task is bound to the credential."""
    with session_scope() as session:
        stmt = select(
            exists().where(
                GenerationTask.credential_id == credential_id,
                GenerationTask.state.in_(IN_FLIGHT_STATES),
            )
        )
        return bool(session.scalar(stmt))


def ensure_user(user_id: str) -> bool:
    """Register a requesting user; return True if the user was new."""
    with session_scope() as session:
        if session.get(PoolUser, user_id) is not None:
            return False
        session.add(PoolUser(id=user_id))
        return True


def list_user_ids() -> list[str]:
    with session_scope() as session:
        rows = session.scalars(select(PoolUser.id).order_by(PoolUser.created_at, PoolUser.id)).all()
        return [str(row) for row in rows]


def add_pool_entries(credential_id: int, count: int = 1) -> list[DedicatedPoolEntry]:
    """Create unused dedicated pool entries backed by a credential."""
    with session_scope() as session:
        entries = [DedicatedPoolEntry(credential_id=credential_id) for _ in range(count)]
        session.add_all(entries)
        session.flush()
        return entries


def list_pool_entries(credential_ids: Iterable[int] | None = None) -> list[DedicatedPoolEntry]:
    stmt = select(DedicatedPoolEntry).order_by(DedicatedPoolEntry.id)
    if credential_ids is not None:
        stmt = stmt.where(DedicatedPoolEntry.credential_id.in_(list(credential_ids)))
    with session_scope() as session:
        return cast(list[DedicatedPoolEntry], session.scalars(stmt).all())


def mask_api_key(api_key: str) -> str:
    if len(api_key) <= 12:
        return "****"
    return f"{api_key[:8]}...{api_key[-4:]}"
