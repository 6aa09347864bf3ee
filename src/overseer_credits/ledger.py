"""Per-user credit ledger and the pre-authorization protocol.

Each account tracks three monotonic-ish fields:

* ``credits_added``: purchases, grants and monthly allowances
* ``credits_used``: consumption priced by the cost model
* ``pre_authorized_credits``: holds placed before variable-cost work starts

``available = credits_added - credits_used - pre_authorized_credits`` is never
negative after any operation. Every mutation locks the account row, applies
the change and appends exactly one audit entry in the same transaction, so
concurrent operations on one account serialize instead of losing updates.

Public methods never raise. Failures are reported through
``report_error`` and surface as ``False``/``None``.

Pre-authorization contract: every successful ``pre_authorize`` must
eventually be matched by releases (or captures via ``record_usage``'s
``from_reservation``) covering the full reserved amount. Holds never expire.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from overseer_credits.audit_log import AuditLog, AuditOperation, BalanceField
from overseer_credits.auth import Authorizer
from overseer_credits.cost_model import (
    PlanTier,
    TokenUsage,
    credits_for_estimated_tokens,
    credits_for_usage,
    plan_credit_allowance,
)
from overseer_credits.database.models import CreditAccount
from overseer_credits.error_reporting import ErrorCode, ErrorReport, report_error
from overseer_credits.exceptions import (
    AccountNotFoundError,
    InsufficientCreditsError,
    InvalidAmountError,
)

logger = structlog.get_logger()

AMOUNT_PRECISION = Decimal("0.0001")
ZERO = Decimal(0)


@dataclass(frozen=True)
class CreditSummary:
    """Snapshot of an account's balances."""

    credits_added: Decimal
    credits_used: Decimal
    pre_authorized_credits: Decimal
    credits_available: Decimal
    plan_tier: str

    @classmethod
    def from_account(cls, account: CreditAccount) -> CreditSummary:
        return cls(
            credits_added=account.credits_added,
            credits_used=account.credits_used,
            pre_authorized_credits=account.pre_authorized_credits,
            credits_available=account.available,
            plan_tier=account.plan_tier or PlanTier.FREE.value,
        )


@dataclass(frozen=True)
class UsageCharge:
    """Outcome of a recorded usage.

    ``captured`` is the part of ``credits`` taken from the caller's
    reservation rather than from the available balance.
    """

    credits: Decimal
    captured: Decimal
    tokens: int


def parse_credit_amount(value: Any, *, allow_zero: bool = False) -> Decimal:
    """Convert an incoming amount to a Decimal with 4 decimal places.

    Raises:
        InvalidAmountError: If the amount is not a finite positive number
            (or non-negative when ``allow_zero`` is set)
    """
    if isinstance(value, bool) or not isinstance(value, int | float | Decimal | str):
        raise InvalidAmountError(value)
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(value) from None
    if not amount.is_finite():
        raise InvalidAmountError(value)
    amount = amount.quantize(AMOUNT_PRECISION, rounding=ROUND_HALF_UP)
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmountError(value)
    return amount


class Ledger:
    """Credit balances with row-locked, audited mutations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_log: AuditLog,
        authorizer: Authorizer,
    ) -> None:
        self._session_factory = session_factory
        self._audit_log = audit_log
        self._authorizer = authorizer

    @asynccontextmanager
    async def _locked_account(
        self, user_id: str
    ) -> AsyncGenerator[tuple[AsyncSession, CreditAccount], None]:
        """Open a transaction holding a row lock on the user's account.

        On SQLite the lock is the database write lock taken at BEGIN. Commits when the block exits cleanly and rolls back on any exception.

        Raises:
            AccountNotFoundError: If the user has no account
        """
        async with self._session_factory() as session, session.begin():
            account = await session.scalar(
                select(CreditAccount).where(CreditAccount.user_id == user_id).with_for_update()
            )
            if account is None:
                raise AccountNotFoundError(user_id)
            yield session, account

    async def _audit(
        self,
        session: AsyncSession,
        account: CreditAccount,
        *,
        operation_type: AuditOperation,
        amount: Decimal,
        balance_field: BalanceField,
        balance_before: Decimal,
        available_before: Decimal,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._audit_log.append(
            session,
            user_id=account.user_id,
            operation_type=operation_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=getattr(account, balance_field.value),
            description=description,
            metadata={
                **(metadata or {}),
                "balance_field": balance_field,
                "available_before": available_before,
                "available_after": account.available,
            },
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def open_account(self, user_id: str, plan_tier: PlanTier | str = PlanTier.FREE) -> bool:
        """Create a zero-balance account if the user has none.

        No audit entry is written since no balance changes.
        """
        try:
            tier = PlanTier(plan_tier).value
            async with self._session_factory() as session, session.begin():
                if await session.get(CreditAccount, user_id) is not None:
                    return True
                session.add(CreditAccount(user_id=user_id, plan_tier=tier))
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.OPEN_ACCOUNT_ERROR,
                    message="Failed to open credit account",
                    user_id=user_id,
                    payload={"plan_tier": str(plan_tier)},
                ),
                exc,
            )
            return False

        logger.info("Credit account opened", user_id=user_id, plan_tier=tier)
        return True

    async def get_credit_summary(self, user_id: str) -> CreditSummary | None:
        """Current balances for a user, or None if the account does not exist."""
        try:
            async with self._session_factory() as session:
                account = await session.get(CreditAccount, user_id)
                if account is None:
                    return None
                return CreditSummary.from_account(account)
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.CREDIT_SUMMARY_ERROR,
                    message="Failed to get credit summary",
                    user_id=user_id,
                ),
                exc,
            )
            return None

    async def has_enough_credits(self, user_id: str, estimated_tokens: int, model: str) -> bool:
        """Check whether the available balance covers an estimated token count.

        Args:
            user_id: Account owner
            estimated_tokens: Estimated input plus output tokens
            model: Model the tokens will be spent on

        Returns:
            True if available >= the estimated credit cost; False for a
            negative or non-integer estimate
        """
        not_a_count = isinstance(estimated_tokens, bool) or not isinstance(estimated_tokens, int)
        if not_a_count or estimated_tokens < 0:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.HAS_ENOUGH_CREDITS_INVALID_ESTIMATE,
                    message="Invalid token estimate",
                    user_id=user_id,
                    payload={"estimated_tokens": estimated_tokens, "model": model},
                )
            )
            return False

        required = credits_for_estimated_tokens(estimated_tokens, model)
        try:
            async with self._session_factory() as session:
                account = await session.get(CreditAccount, user_id)
                if account is None:
                    return False
                available = account.available
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.HAS_ENOUGH_CREDITS_ERROR,
                    message="Failed to check credit availability",
                    user_id=user_id,
                    payload={"estimated_tokens": estimated_tokens, "model": model},
                ),
                exc,
            )
            return False
        return available >= required

    # ------------------------------------------------------------------
    # Pre-authorization
    # ------------------------------------------------------------------

    async def pre_authorize(self, user_id: str, amount: Any) -> bool:
        """Place a hold on part of the available balance.

        Returns:
            True if the hold was placed; False without mutation if the amount
            is invalid, the account is missing or the balance is insufficient
        """
        try:
            credits = parse_credit_amount(amount)
        except InvalidAmountError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.PRE_AUTHORIZE_INVALID_AMOUNT,
                    message="Invalid pre-authorization amount",
                    user_id=user_id,
                    payload={"amount": amount},
                )
            )
            return False

        try:
            async with self._locked_account(user_id) as (session, account):
                available = account.available
                if available < credits:
                    raise InsufficientCreditsError(credits, available)
                before = account.pre_authorized_credits
                account.pre_authorized_credits = before + credits
                await self._audit(
                    session,
                    account,
                    operation_type=AuditOperation.PRE_AUTHORIZE,
                    amount=credits,
                    balance_field=BalanceField.PRE_AUTHORIZED_CREDITS,
                    balance_before=before,
                    available_before=available,
                    description="Pre-authorized credits for batch processing",
                )
                after = account.pre_authorized_credits
        except AccountNotFoundError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.PRE_AUTHORIZE_USER_NOT_FOUND,
                    message="User not found for pre-authorization",
                    user_id=user_id,
                    payload={"amount": credits},
                )
            )
            return False
        except InsufficientCreditsError as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.PRE_AUTHORIZE_INSUFFICIENT_CREDITS,
                    message="Insufficient credits for pre-authorization",
                    user_id=user_id,
                    payload={"amount": credits, "available_credits": exc.available},
                )
            )
            return False
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.PRE_AUTHORIZE_ERROR,
                    message="Failed to pre-authorize credits",
                    user_id=user_id,
                    payload={"amount": credits},
                ),
                exc,
            )
            return False

        logger.info(
            "Credits pre-authorized",
            user_id=user_id,
            amount=credits,
            pre_authorized_before=before,
            pre_authorized_after=after,
        )
        return True

    async def release(self, user_id: str, amount: Any) -> bool:
        """Release a hold, flooring the reserved balance at zero.

        Returns:
            True if the release was recorded
        """
        try:
            credits = parse_credit_amount(amount)
        except InvalidAmountError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.RELEASE_PRE_AUTHORIZE_INVALID_AMOUNT,
                    message="Invalid amount for releasing pre-authorized credits",
                    user_id=user_id,
                    payload={"amount": amount},
                )
            )
            return False

        try:
            async with self._locked_account(user_id) as (session, account):
                available = account.available
                before = account.pre_authorized_credits
                account.pre_authorized_credits = max(ZERO, before - credits)
                await self._audit(
                    session,
                    account,
                    operation_type=AuditOperation.RELEASE_PRE_AUTHORIZE,
                    amount=credits,
                    balance_field=BalanceField.PRE_AUTHORIZED_CREDITS,
                    balance_before=before,
                    available_before=available,
                    description="Released pre-authorized credits",
                )
                after = account.pre_authorized_credits
        except AccountNotFoundError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.RELEASE_PRE_AUTHORIZE_USER_NOT_FOUND,
                    message="User not found for releasing pre-authorized credits",
                    user_id=user_id,
                    payload={"amount": credits},
                )
            )
            return False
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.RELEASE_PRE_AUTHORIZE_ERROR,
                    message="Failed to release pre-authorized credits",
                    user_id=user_id,
                    payload={"amount": credits},
                ),
                exc,
            )
            return False

        if credits > before:
            logger.warning(
                "Released more credits than were pre-authorized",
                user_id=user_id,
                amount=credits,
                pre_authorized=before,
            )
        logger.info(
            "Pre-authorized credits released",
            user_id=user_id,
            amount=credits,
            pre_authorized_before=before,
            pre_authorized_after=after,
        )
        return True

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def record_usage(
        self,
        user_id: str,
        agent_id: str | None,
        usage: TokenUsage,
        model: str,
        *,
        from_reservation: Decimal | None = None,
        job_id: str | None = None,
    ) -> UsageCharge | None:
        """Charge actual token usage to an account.

        When ``from_reservation`` is given, up to that many credits of the
        charge are taken out of the account's pre-authorized hold in the same
        update, so a job's reservation shrinks as it is consumed. The rest of
        the charge must fit in the available balance.

        Args:
            user_id: Account owner
            agent_id: Agent that consumed the tokens, if any
            usage: Token counts reported by the completion engine
            model: Model identifier used for pricing
            from_reservation: Credits of the caller's hold the charge may consume
            job_id: Batch job the usage belongs to, if any

        Returns:
            The recorded charge, or None if nothing was recorded
        """
        if not user_id:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.TRACK_USAGE_MISSING_USER,
                    message="User ID is required for tracking usage",
                    agent_id=agent_id,
                    job_id=job_id,
                    payload={"usage": usage.to_dict() if usage else None, "model": model},
                )
            )
            return None

        if (
            usage is None
            or usage.tokens <= 0
            or usage.prompt_tokens < 0
            or usage.completion_tokens < 0
        ):
            report_error(
                ErrorReport(
                    error_code=ErrorCode.TRACK_USAGE_INVALID_USAGE,
                    message="Invalid token usage data",
                    user_id=user_id,
                    agent_id=agent_id,
                    job_id=job_id,
                    payload={"usage": usage.to_dict() if usage else None, "model": model},
                )
            )
            return None

        charge = credits_for_usage(usage, model)
        reservation = max(ZERO, from_reservation or ZERO)

        try:
            async with self._locked_account(user_id) as (session, account):
                available = account.available
                captured = min(reservation, charge, account.pre_authorized_credits)
                if charge - captured > available:
                    raise InsufficientCreditsError(charge - captured, available)
                before = account.credits_used
                account.credits_used = before + charge
                account.pre_authorized_credits -= captured
                await self._audit(
                    session,
                    account,
                    operation_type=AuditOperation.USAGE,
                    amount=charge,
                    balance_field=BalanceField.CREDITS_USED,
                    balance_before=before,
                    available_before=available,
                    description="Token usage",
                    metadata={
                        "model": model,
                        "tokens": usage.tokens,
                        "prompt_tokens": usage.prompt_tokens,
                        "completion_tokens": usage.completion_tokens,
                        "agent_id": agent_id,
                        "job_id": job_id,
                        "captured_from_reservation": captured,
                    },
                )
                after = account.credits_used
        except AccountNotFoundError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.TRACK_USAGE_USER_NOT_FOUND,
                    message="User not found for tracking usage",
                    user_id=user_id,
                    agent_id=agent_id,
                    job_id=job_id,
                    payload={"usage": usage.to_dict(), "model": model},
                )
            )
            return None
        except InsufficientCreditsError as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.TRACK_USAGE_INSUFFICIENT_CREDITS,
                    message="Insufficient credits to record token usage",
                    user_id=user_id,
                    agent_id=agent_id,
                    job_id=job_id,
                    payload={
                        "usage": usage.to_dict(),
                        "model": model,
                        "credits": charge,
                        "required": exc.required,
                        "available_credits": exc.available,
                    },
                )
            )
            return None
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.TRACK_USAGE_ERROR,
                    message="Failed to track token usage",
                    user_id=user_id,
                    agent_id=agent_id,
                    job_id=job_id,
                    payload={"usage": usage.to_dict(), "model": model},
                ),
                exc,
            )
            return None

        logger.info(
            "Token usage recorded",
            user_id=user_id,
            agent_id=agent_id,
            job_id=job_id,
            model=model,
            tokens=usage.tokens,
            credits=charge,
            captured=captured,
            credits_used_before=before,
            credits_used_after=after,
        )
        return UsageCharge(credits=charge, captured=captured, tokens=usage.tokens)

    async def track_usage(
        self,
        user_id: str,
        agent_id: str | None,
        usage: TokenUsage,
        model: str,
        *,
        from_reservation: Decimal | None = None,
    ) -> bool:
        """Charge actual token usage; see ``record_usage``."""
        charge = await self.record_usage(
            user_id, agent_id, usage, model, from_reservation=from_reservation
        )
        return charge is not None

    # ------------------------------------------------------------------
    # Privileged mutations
    # ------------------------------------------------------------------

    async def add_credits(
        self,
        user_id: str,
        amount: Any,
        authorization: str | None,
        source: str = "manual",
    ) -> bool:
        """Grant credits to an account (purchases, promotions, support)."""
        try:
            credits = parse_credit_amount(amount)
        except InvalidAmountError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.ADD_CREDITS_INVALID_AMOUNT,
                    message="Invalid amount for adding credits",
                    user_id=user_id,
                    payload={"amount": amount, "source": source},
                )
            )
            return False

        if not self._authorizer.is_authorized(authorization):
            report_error(
                ErrorReport(
                    error_code=ErrorCode.ADD_CREDITS_UNAUTHORIZED,
                    message="Unauthorized attempt to add credits",
                    user_id=user_id,
                    payload={"amount": credits, "source": source},
                )
            )
            return False

        try:
            async with self._locked_account(user_id) as (session, account):
                available = account.available
                before = account.credits_added
                account.credits_added = before + credits
                await self._audit(
                    session,
                    account,
                    operation_type=AuditOperation.ADD,
                    amount=credits,
                    balance_field=BalanceField.CREDITS_ADDED,
                    balance_before=before,
                    available_before=available,
                    description=f"Added credits from source: {source}",
                    metadata={"source": source},
                )
                after = account.credits_added
        except AccountNotFoundError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.ADD_CREDITS_USER_NOT_FOUND,
                    message="User not found for adding credits",
                    user_id=user_id,
                    payload={"amount": credits, "source": source},
                )
            )
            return False
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.ADD_CREDITS_ERROR,
                    message="Failed to add credits",
                    user_id=user_id,
                    payload={"amount": credits, "source": source},
                ),
                exc,
            )
            return False

        logger.info(
            "Credits added",
            user_id=user_id,
            amount=credits,
            source=source,
            credits_added_before=before,
            credits_added_after=after,
        )
        return True

    async def refund_credits(
        self,
        user_id: str,
        amount: Any,
        reason: str,
        authorization: str | None,
    ) -> bool:
        """Give back consumed credits, flooring ``credits_used`` at zero."""
        try:
            credits = parse_credit_amount(amount)
        except InvalidAmountError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.REFUND_CREDITS_INVALID_AMOUNT,
                    message="Invalid amount for credit refund",
                    user_id=user_id,
                    payload={"amount": amount, "reason": reason},
                )
            )
            return False

        if not reason or not reason.strip():
            report_error(
                ErrorReport(
                    error_code=ErrorCode.REFUND_CREDITS_MISSING_REASON,
                    message="Refund reason is required",
                    user_id=user_id,
                    payload={"amount": credits},
                )
            )
            return False

        if not self._authorizer.is_authorized(authorization):
            report_error(
                ErrorReport(
                    error_code=ErrorCode.REFUND_CREDITS_UNAUTHORIZED,
                    message="Unauthorized attempt to refund credits",
                    user_id=user_id,
                    payload={"amount": credits, "reason": reason},
                )
            )
            return False

        try:
            async with self._locked_account(user_id) as (session, account):
                available = account.available
                before = account.credits_used
                account.credits_used = max(ZERO, before - credits)
                await self._audit(
                    session,
                    account,
                    operation_type=AuditOperation.REFUND,
                    amount=credits,
                    balance_field=BalanceField.CREDITS_USED,
                    balance_before=before,
                    available_before=available,
                    description=f"Refunded credits: {reason}",
                    metadata={"reason": reason},
                )
                after = account.credits_used
        except AccountNotFoundError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.REFUND_CREDITS_USER_NOT_FOUND,
                    message="User not found for credit refund",
                    user_id=user_id,
                    payload={"amount": credits, "reason": reason},
                )
            )
            return False
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.REFUND_CREDITS_ERROR,
                    message="Failed to refund credits",
                    user_id=user_id,
                    payload={"amount": credits, "reason": reason},
                ),
                exc,
            )
            return False

        logger.info(
            "Credits refunded",
            user_id=user_id,
            amount=credits,
            reason=reason,
            credits_used_before=before,
            credits_used_after=after,
        )
        return True

    async def reset_monthly_credits(
        self,
        user_id: str,
        plan_credit_amount: Any | None,
        authorization: str | None,
    ) -> bool:
        """Start a new billing period.

        Unused credits roll over and the period's allowance is granted on top:
        ``credits_added = available + pre_authorized + allowance`` and
        ``credits_used = 0``. Outstanding holds stay backed by credits.

        Args:
            user_id: Account owner
            plan_credit_amount: Allowance to grant; None uses the account's plan tier
            authorization: Token presented by the caller

        Returns:
            True if the reset was applied
        """
        allowance: Decimal | None = None
        if plan_credit_amount is not None:
            try:
                allowance = parse_credit_amount(plan_credit_amount, allow_zero=True)
            except InvalidAmountError:
                report_error(
                    ErrorReport(
                        error_code=ErrorCode.RESET_CREDITS_INVALID_AMOUNT,
                        message="Invalid credit amount for monthly reset",
                        user_id=user_id,
                        payload={"credit_amount": plan_credit_amount},
                    )
                )
                return False

        if not self._authorizer.is_authorized(authorization):
            report_error(
                ErrorReport(
                    error_code=ErrorCode.RESET_CREDITS_UNAUTHORIZED,
                    message="Unauthorized attempt to reset monthly credits",
                    user_id=user_id,
                    payload={"credit_amount": allowance},
                )
            )
            return False

        try:
            async with self._locked_account(user_id) as (session, account):
                if allowance is None:
                    allowance = plan_credit_allowance(account.plan_tier)
                available = account.available
                before = account.credits_added
                remaining = max(ZERO, available)
                account.credits_added = remaining + account.pre_authorized_credits + allowance
                account.credits_used = ZERO
                await self._audit(
                    session,
                    account,
                    operation_type=AuditOperation.ADD,
                    amount=allowance,
                    balance_field=BalanceField.CREDITS_ADDED,
                    balance_before=before,
                    available_before=available,
                    description="Monthly credit reset based on subscription plan",
                    metadata={
                        "source": "subscription_reset",
                        "credit_amount": allowance,
                        "rollover_credits": remaining,
                        "plan_tier": account.plan_tier,
                    },
                )
                after = account.credits_added
        except AccountNotFoundError:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.RESET_CREDITS_USER_NOT_FOUND,
                    message="User not found for monthly credit reset",
                    user_id=user_id,
                    payload={"credit_amount": allowance},
                )
            )
            return False
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.RESET_CREDITS_ERROR,
                    message="Failed to reset monthly credits",
                    user_id=user_id,
                    payload={"credit_amount": allowance},
                ),
                exc,
            )
            return False

        logger.info(
            "Monthly credits reset",
            user_id=user_id,
            allowance=allowance,
            credits_added_before=before,
            credits_added_after=after,
        )
        return True
