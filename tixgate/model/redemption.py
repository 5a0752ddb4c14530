# model/redemption.py
"""
Redemption state machine for one sold unit (ticket, offer grant,
reservation pass):

    valid -> used        (check-in, terminal)
    valid -> cancelled   (terminal, blocks redemption)
    valid -> refunded    (terminal, blocks redemption)

Every transition is a single `UPDATE ... WHERE status = 'valid'`, so of any
number of concurrent scanners exactly one observes the row in `valid` and
wins; everyone else finds it already terminal.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, new_qr_token, now_ts, to_iso
from ..infra.sql import Database, atomically
from ..infra.timings import timeit
from .db import C_CANCELLED, C_REFUNDED, C_USED, C_VALID, K_TICKET
from .inventory import _release

logger = logging.getLogger(__name__)

ALREADY_USED = "ALREADY_USED"
NOT_VALID = "NOT_VALID"


@dataclass
class CheckInResult:
    success: bool
    error: Optional[str] = None  # ALREADY_USED | NOT_VALID
    message: Optional[str] = None
    credential_id: Optional[str] = None
    status: Optional[str] = None
    checked_in_at: Optional[float] = None
    checked_in_by: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        d["success"] = self.success
        if self.checked_in_at is not None:
            d["checked_in_at"] = to_iso(self.checked_in_at)
        return d


# UN-GATED internal function
async def _issue_credentials(
    session: AsyncSession,
    order_id: str,
    lines: Iterable[Tuple[str, int, str]],
    now: float,
) -> List[Dict[str, Any]]:
    """
    lines: (pool_id, quantity, kind)
    Ticket pools get one credential per unit; offer and reservation pools
    get one credential per line that admits the whole party.
    """
    issued: List[Dict[str, Any]] = []
    for pool_id, quantity, kind in lines:
        if kind == K_TICKET:
            units = [1] * quantity
        else:
            units = [quantity]
        for q in units:
            cred = {
                "id": new_id(),
                "order_id": order_id,
                "pool_id": pool_id,
                "qr_token": new_qr_token(),
                "status": C_VALID,
                "quantity": q,
                "created_at": now,
            }
            await session.execute(text("""
                INSERT INTO credentials(
                    id, order_id, pool_id, qr_token, status, quantity,
                    created_at
                ) VALUES (
                    :id, :order_id, :pool_id, :qr_token, :status, :quantity,
                    :created_at
                )
            """), cred)
            issued.append(cred)
    return issued


async def _log_scan(
    session: AsyncSession,
    *,
    credential_id: Optional[str],
    qr_token: str,
    staff_id: Optional[str],
    business_id: Optional[str],
    source: str,
    result: str,
    scanned_at: Optional[float],
    now: float,
) -> None:
    await session.execute(text("""
        INSERT INTO scan_log(
            credential_id, qr_token, staff_id, business_id, source, result,
            scanned_at, recorded_at
        ) VALUES (
            :credential_id, :qr_token, :staff_id, :business_id, :source,
            :result, :scanned_at, :recorded_at
        )
    """), {
        "credential_id": credential_id,
        "qr_token": qr_token,
        "staff_id": staff_id,
        "business_id": business_id,
        "source": source,
        "result": result,
        "scanned_at": scanned_at,
        "recorded_at": now,
    })


# UN-GATED internal function
async def _check_in(
    session: AsyncSession,
    *,
    column: str,
    value: str,
    staff_id: str,
    business_id: Optional[str],
    source: str,
    scanned_at: Optional[float],
) -> CheckInResult:
    now = now_ts()
    params = {
        "v": value, "staff": staff_id, "now": now,
        "used": C_USED, "valid": C_VALID,
    }
    scope = ""
    if business_id:
        scope = """
          AND pool_id IN (
              SELECT id FROM inventory_pools WHERE business_id = :biz
          )"""
        params["biz"] = business_id

    row = (await session.execute(text(f"""
        UPDATE credentials
        SET status = :used,
            checked_in_at = :now,
            checked_in_by = :staff,
            updated_at = :now
        WHERE {column} = :v
          AND status = :valid{scope}
        RETURNING id, qr_token
    """), params)).first()

    if row is not None:
        result = CheckInResult(
            success=True,
            credential_id=row[0],
            status=C_USED,
            checked_in_at=now,
            checked_in_by=staff_id,
        )
        qr_token = row[1]
    else:
        result, qr_token = await _explain_rejection(
            session, column, value, business_id
        )

    await _log_scan(
        session,
        credential_id=result.credential_id,
        qr_token=qr_token or value,
        staff_id=staff_id,
        business_id=business_id,
        source=source,
        result="ok" if result.success else result.error,
        scanned_at=scanned_at,
        now=now,
    )
    return result


async def _explain_rejection(
    session: AsyncSession, column: str, value: str,
    business_id: Optional[str],
) -> Tuple[CheckInResult, Optional[str]]:
    row = (await session.execute(text(f"""
        SELECT c.id, c.qr_token, c.status, c.checked_in_at, c.checked_in_by,
               p.business_id
        FROM credentials AS c
        LEFT JOIN inventory_pools AS p ON p.id = c.pool_id
        WHERE c.{column} = :v
    """), {"v": value})).mappings().first()

    if row is None:
        return CheckInResult(
            success=False, error=NOT_VALID, message="credential not found"
        ), None

    if business_id and row["business_id"] != business_id:
        return CheckInResult(
            success=False, error=NOT_VALID,
            message="credential belongs to another business",
            credential_id=row["id"],
        ), row["qr_token"]

    if row["status"] == C_USED:
        return CheckInResult(
            success=False,
            error=ALREADY_USED,
            message="already used",
            credential_id=row["id"],
            status=C_USED,
            checked_in_at=row["checked_in_at"],
            checked_in_by=row["checked_in_by"],
        ), row["qr_token"]

    return CheckInResult(
        success=False,
        error=NOT_VALID,
        message=f"credential is {row['status']}",
        credential_id=row["id"],
        status=row["status"],
    ), row["qr_token"]


# UN-GATED internal function
async def _void_credentials(
    session: AsyncSession,
    *,
    column: str,
    value: str,
    new_status: str,
    release: bool,
) -> List[Dict[str, Any]]:
    """
    valid -> cancelled|refunded for every credential matching column=value.
    Optionally hands their capacity back to the pool.
    """
    if new_status not in (C_CANCELLED, C_REFUNDED):
        raise ValueError("new_status must be cancelled or refunded")
    rows = (await session.execute(text(f"""
        UPDATE credentials
        SET status = :s, updated_at = :now
        WHERE {column} = :v AND status = :valid
        RETURNING id, pool_id, quantity
    """), {
        "s": new_status, "now": now_ts(), "v": value, "valid": C_VALID,
    })).mappings().all()

    voided = [dict(r) for r in rows]
    if release:
        per_pool: Dict[str, int] = {}
        for r in voided:
            per_pool[r["pool_id"]] = per_pool.get(r["pool_id"], 0) + (
                int(r["quantity"])
            )
        for pool_id in sorted(per_pool):
            await _release(session, pool_id, per_pool[pool_id])
    return voided


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def check_in(
    db: Database,
    staff_id: str,
    *,
    qr_token: Optional[str] = None,
    credential_id: Optional[str] = None,
    business_id: Optional[str] = None,
    source: str = "online",
    scanned_at: Optional[float] = None,
) -> CheckInResult:
    if (qr_token is None) == (credential_id is None):
        raise ValueError("pass exactly one of qr_token / credential_id")
    if not staff_id:
        raise ValueError("staff_id is required")

    column, value = (
        ("qr_token", qr_token) if qr_token is not None
        else ("id", credential_id)
    )
    async with timeit("redemption.check_in"):
        result = await atomically(
            db, _check_in,
            column=column, value=value, staff_id=staff_id,
            business_id=business_id, source=source, scanned_at=scanned_at,
        )
    if not result.success:
        logger.info(
            "check-in rejected: %s (%s) credential=%s source=%s",
            result.error, result.message, result.credential_id, source,
        )
    return result


async def cancel_credential(
    db: Database, credential_id: str, *, refunded: bool = False,
    release: bool = True,
) -> bool:
    """Cancel (or refund) one still-valid credential."""
    voided = await atomically(
        db, _void_credentials,
        column="id", value=credential_id,
        new_status=C_REFUNDED if refunded else C_CANCELLED,
        release=release,
    )
    return bool(voided)


async def inspect(db: Database, qr_token: str) -> Optional[Dict[str, Any]]:
    """Look up a credential without redeeming it."""
    async with db.transaction() as session:
        row = (await session.execute(text("""
            SELECT c.id, c.order_id, c.pool_id, c.status, c.quantity,
                   c.checked_in_at, c.checked_in_by,
                   p.name AS pool_name, p.kind, p.business_id
            FROM credentials AS c
            LEFT JOIN inventory_pools AS p ON p.id = c.pool_id
            WHERE c.qr_token = :t
        """), {"t": qr_token})).mappings().first()
    if row is None:
        return None
    d = dict(row)
    d["redeemable"] = d["status"] == C_VALID
    d["checked_in_at"] = to_iso(d["checked_in_at"])
    return d


async def scan_log(
    db: Database, credential_id: str
) -> List[Dict[str, Any]]:
    async with db.transaction() as session:
        rows = (await session.execute(text("""
            SELECT credential_id, qr_token, staff_id, business_id, source,
                   result, scanned_at, recorded_at
            FROM scan_log
            WHERE credential_id = :id
            ORDER BY id
        """), {"id": credential_id})).mappings().all()
    return [dict(r) for r in rows]
