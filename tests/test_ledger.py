"""
Tests for the credit ledger.

Tests cover:
- Account lifecycle and balance summaries
- Privileged grants, refunds and monthly resets
- Usage charging
- The audit trail written by every mutation
"""

import asyncio
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any

import pytest
from structlog.testing import capture_logs

from overseer_credits.audit_log import AuditLog
from overseer_credits.cost_model import TokenUsage
from overseer_credits.error_reporting import ErrorCode
from overseer_credits.exceptions import InvalidAmountError
from overseer_credits.ledger import Ledger, parse_credit_amount

FundAccount = Callable[..., Awaitable[str]]

GPT4O_1K_1K = TokenUsage(prompt_tokens=1000, completion_tokens=1000)


async def _balances(ledger: Ledger, user_id: str) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    summary = await ledger.get_credit_summary(user_id)
    assert summary is not None
    return (
        summary.credits_added,
        summary.credits_used,
        summary.pre_authorized_credits,
        summary.credits_available,
    )


# ============================================================================
# AMOUNT PARSING
# ============================================================================


@pytest.mark.unit
@pytest.mark.parametrize(
    ("value", "expected"),
    [(10, Decimal("10.0000")), ("2.5", Decimal("2.5000")), (0.1, Decimal("0.1000"))],
)
def test_parse_credit_amount(value: Any, expected: Decimal) -> None:
    assert parse_credit_amount(value) == expected


@pytest.mark.unit
@pytest.mark.parametrize("value", [0, -1, "abc", None, True, float("nan"), float("inf"), [1]])
def test_parse_credit_amount_rejects(value: Any) -> None:
    with pytest.raises(InvalidAmountError):
        parse_credit_amount(value)


@pytest.mark.unit
def test_parse_credit_amount_allows_zero_when_asked() -> None:
    assert parse_credit_amount(0, allow_zero=True) == Decimal(0)


# ============================================================================
# ACCOUNTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_open_account_is_idempotent(ledger: Ledger, audit_log: AuditLog) -> None:
    assert await ledger.open_account("user-1", "pro")
    assert await ledger.open_account("user-1", "enterprise")

    summary = await ledger.get_credit_summary("user-1")
    assert summary is not None
    assert summary.plan_tier == "pro"
    assert summary.credits_available == 0
    assert (await audit_log.query("user-1")).total == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_summary_for_missing_account(ledger: Ledger) -> None:
    assert await ledger.get_credit_summary("nobody") is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_has_enough_credits(ledger: Ledger, funded_account: FundAccount) -> None:
    user_id = await funded_account("user-1", Decimal("0.015"))

    # 1000 estimated gpt-4o tokens cost exactly 0.015
    assert await ledger.has_enough_credits(user_id, 1000, "gpt-4o") is True
    assert await ledger.has_enough_credits(user_id, 1100, "gpt-4o") is False
    assert await ledger.has_enough_credits("nobody", 1, "gpt-4o") is False


@pytest.mark.integration
@pytest.mark.asyncio
async def test_has_enough_credits_rejects_negative_estimate(
    ledger: Ledger, funded_account: FundAccount
) -> None:
    user_id = await funded_account("user-1", 0)

    with capture_logs() as logs:
        assert await ledger.has_enough_credits(user_id, -1000, "gpt-4o") is False

    assert logs[0]["error_code"] == ErrorCode.HAS_ENOUGH_CREDITS_INVALID_ESTIMATE


# ============================================================================
# GRANTS
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_add_credits_writes_audit_entry(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount, admin_key: str
) -> None:
    user_id = await funded_account("user-1", 0)

    assert await ledger.add_credits(user_id, 100, admin_key, "stripe")

    assert await _balances(ledger, user_id) == (Decimal(100), 0, 0, Decimal(100))
    page = await audit_log.query(user_id)
    assert page.total == 1
    entry = page.entries[0]
    assert entry.operation_type == "add"
    assert entry.amount == Decimal(100)
    assert entry.balance_before == Decimal(0)
    assert entry.balance_after == Decimal(100)
    assert entry.description == "Added credits from source: stripe"
    assert entry.metadata_["balance_field"] == "credits_added"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_add_credits_unauthorized(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount
) -> None:
    user_id = await funded_account("user-1", 0)

    with capture_logs() as logs:
        assert await ledger.add_credits(user_id, 100, "wrong-key") is False
        assert await ledger.add_credits(user_id, 100, None) is False

    assert {log["error_code"] for log in logs} == {ErrorCode.ADD_CREDITS_UNAUTHORIZED}
    assert (await _balances(ledger, user_id))[0] == 0
    assert (await audit_log.query(user_id)).total == 0


@pytest.mark.integration
@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -10, "lots", None])
async def test_add_credits_invalid_amount(
    ledger: Ledger, funded_account: FundAccount, admin_key: str, amount: Any
) -> None:
    user_id = await funded_account("user-1", 0)

    with capture_logs() as logs:
        assert await ledger.add_credits(user_id, amount, admin_key) is False

    assert logs[0]["error_code"] == ErrorCode.ADD_CREDITS_INVALID_AMOUNT


@pytest.mark.integration
@pytest.mark.asyncio
async def test_invalid_amount_checked_before_authorization(ledger: Ledger) -> None:
    with capture_logs() as logs:
        assert await ledger.add_credits("user-1", -1, "wrong-key") is False

    assert logs[0]["error_code"] == ErrorCode.ADD_CREDITS_INVALID_AMOUNT


@pytest.mark.integration
@pytest.mark.asyncio
async def test_add_credits_unknown_user(ledger: Ledger, admin_key: str) -> None:
    with capture_logs() as logs:
        assert await ledger.add_credits("nobody", 10, admin_key) is False

    assert logs[0]["error_code"] == ErrorCode.ADD_CREDITS_USER_NOT_FOUND


# ============================================================================
# USAGE
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_track_usage_charges_model_rate(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount
) -> None:
    user_id = await funded_account("user-1", 100)

    assert await ledger.track_usage(user_id, "agent-1", GPT4O_1K_1K, "gpt-4o")

    assert await _balances(ledger, user_id) == (Decimal(100), Decimal(20), 0, Decimal(80))
    entry = (await audit_log.query(user_id, operation_type="usage")).entries[0]
    assert entry.description == "Token usage"
    assert entry.amount == Decimal(20)
    assert entry.balance_before == Decimal(0)
    assert entry.balance_after == Decimal(20)
    assert entry.metadata_["model"] == "gpt-4o"
    assert entry.metadata_["tokens"] == 2000
    assert entry.metadata_["agent_id"] == "agent-1"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_track_usage_refuses_overdraft(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount
) -> None:
    user_id = await funded_account("user-1", 10)

    with capture_logs() as logs:
        assert await ledger.track_usage(user_id, None, GPT4O_1K_1K, "gpt-4o") is False

    assert logs[0]["error_code"] == ErrorCode.TRACK_USAGE_INSUFFICIENT_CREDITS
    assert (await _balances(ledger, user_id))[1] == 0
    assert (await audit_log.query(user_id, operation_type="usage")).total == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_track_usage_rejects_bad_input(ledger: Ledger, funded_account: FundAccount) -> None:
    user_id = await funded_account("user-1", 100)

    with capture_logs() as logs:
        assert await ledger.track_usage("", None, GPT4O_1K_1K, "gpt-4o") is False
        assert await ledger.track_usage(user_id, None, TokenUsage(0, 0), "gpt-4o") is False
        assert await ledger.track_usage(user_id, None, TokenUsage(-5, 10), "gpt-4o") is False
        assert await ledger.track_usage("nobody", None, GPT4O_1K_1K, "gpt-4o") is False

    assert [log["error_code"] for log in logs] == [
        ErrorCode.TRACK_USAGE_MISSING_USER,
        ErrorCode.TRACK_USAGE_INVALID_USAGE,
        ErrorCode.TRACK_USAGE_INVALID_USAGE,
        ErrorCode.TRACK_USAGE_USER_NOT_FOUND,
    ]


# ============================================================================
# REFUNDS
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_refund_reduces_used(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount, admin_key: str
) -> None:
    user_id = await funded_account("user-1", 100)
    assert await ledger.track_usage(user_id, None, GPT4O_1K_1K, "gpt-4o")

    assert await ledger.refund_credits(user_id, 5, "Failed generation", admin_key)

    assert (await _balances(ledger, user_id))[1] == Decimal(15)
    entry = (await audit_log.query(user_id, operation_type="refund")).entries[0]
    assert entry.description == "Refunded credits: Failed generation"
    assert entry.balance_before == Decimal(20)
    assert entry.balance_after == Decimal(15)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_refund_floors_used_at_zero(
    ledger: Ledger, funded_account: FundAccount, admin_key: str
) -> None:
    user_id = await funded_account("user-1", 100)
    assert await ledger.track_usage(user_id, None, GPT4O_1K_1K, "gpt-4o")

    assert await ledger.refund_credits(user_id, 50, "Goodwill", admin_key)

    assert await _balances(ledger, user_id) == (Decimal(100), 0, 0, Decimal(100))


@pytest.mark.integration
@pytest.mark.asyncio
@pytest.mark.parametrize("reason", ["", "   "])
async def test_refund_requires_reason(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount, admin_key: str, reason: str
) -> None:
    user_id = await funded_account("user-1", 100)
    assert await ledger.track_usage(user_id, None, GPT4O_1K_1K, "gpt-4o")

    with capture_logs() as logs:
        assert await ledger.refund_credits(user_id, 5, reason, admin_key) is False

    assert logs[0]["error_code"] == ErrorCode.REFUND_CREDITS_MISSING_REASON
    assert (await _balances(ledger, user_id))[1] == Decimal(20)
    assert (await audit_log.query(user_id, operation_type="refund")).total == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_refund_unauthorized(ledger: Ledger, funded_account: FundAccount) -> None:
    user_id = await funded_account("user-1", 100)

    with capture_logs() as logs:
        assert await ledger.refund_credits(user_id, 5, "reason", "nope") is False

    assert logs[0]["error_code"] == ErrorCode.REFUND_CREDITS_UNAUTHORIZED


# ============================================================================
# MONTHLY RESET
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_reset_rolls_over_available_and_keeps_holds(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount, admin_key: str
) -> None:
    user_id = await funded_account("user-1", 100)
    assert await ledger.track_usage(user_id, None, GPT4O_1K_1K, "gpt-4o")
    assert await ledger.pre_authorize(user_id, 10)
    # added 100, used 20, pre-authorized 10, available 70

    assert await ledger.reset_monthly_credits(user_id, 500, admin_key)

    assert await _balances(ledger, user_id) == (Decimal(580), 0, Decimal(10), Decimal(570))
    entry = (await audit_log.query(user_id, limit=1)).entries[0]
    assert entry.operation_type == "add"
    assert entry.amount == Decimal(500)
    assert entry.balance_before == Decimal(100)
    assert entry.balance_after == Decimal(580)
    assert entry.description == "Monthly credit reset based on subscription plan"
    assert entry.metadata_["source"] == "subscription_reset"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_reset_defaults_to_plan_allowance(
    ledger: Ledger, admin_key: str
) -> None:
    assert await ledger.open_account("user-1", "pro")

    assert await ledger.reset_monthly_credits("user-1", None, admin_key)

    assert await _balances(ledger, "user-1") == (Decimal(500), 0, 0, Decimal(500))


@pytest.mark.integration
@pytest.mark.asyncio
async def test_reset_guards(ledger: Ledger, funded_account: FundAccount, admin_key: str) -> None:
    user_id = await funded_account("user-1", 100)

    with capture_logs() as logs:
        assert await ledger.reset_monthly_credits(user_id, -1, admin_key) is False
        assert await ledger.reset_monthly_credits(user_id, 500, "nope") is False
        assert await ledger.reset_monthly_credits("nobody", 500, admin_key) is False

    assert [log["error_code"] for log in logs] == [
        ErrorCode.RESET_CREDITS_INVALID_AMOUNT,
        ErrorCode.RESET_CREDITS_UNAUTHORIZED,
        ErrorCode.RESET_CREDITS_USER_NOT_FOUND,
    ]
    assert (await _balances(ledger, user_id))[0] == Decimal(100)


# ============================================================================
# AUDIT TRAIL
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_every_mutation_audited_and_available_never_negative(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount, admin_key: str
) -> None:
    user_id = await funded_account("user-1", 50)
    operations = [
        ledger.pre_authorize(user_id, 30),
        ledger.track_usage(user_id, None, GPT4O_1K_1K, "gpt-4o"),
        ledger.track_usage(user_id, None, GPT4O_1K_1K, "gpt-4o"),  # refused
        ledger.release(user_id, 30),
        ledger.refund_credits(user_id, 5, "Partial outage", admin_key),
        ledger.add_credits(user_id, 10, admin_key, "promo"),
    ]
    succeeded = 1  # the initial grant
    for operation in operations:
        if await operation:
            succeeded += 1
        assert (await _balances(ledger, user_id))[3] >= 0

    page = await audit_log.query(user_id, limit=100)
    assert page.total == succeeded == 6
    for entry in page.entries:
        assert entry.metadata_["available_after"] is not None
        assert Decimal(entry.metadata_["available_after"]) >= 0


# ============================================================================
# CONCURRENCY
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_grants_are_not_lost(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount, admin_key: str
) -> None:
    user_id = await funded_account("user-1", 0)

    results = await asyncio.gather(
        *(ledger.add_credits(user_id, 1, admin_key, "concurrent") for _ in range(20))
    )

    assert all(results)
    assert await _balances(ledger, user_id) == (Decimal(20), 0, 0, Decimal(20))

    page = await audit_log.query(user_id, limit=100)
    assert page.total == 20
    chain = sorted(page.entries, key=lambda entry: entry.balance_before)
    assert chain[0].balance_before == 0
    assert chain[-1].balance_after == Decimal(20)
    for earlier, later in zip(chain, chain[1:], strict=False):
        assert later.balance_before == earlier.balance_after


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_holds_never_overdraw(
    ledger: Ledger, audit_log: AuditLog, funded_account: FundAccount
) -> None:
    user_id = await funded_account("user-1", 10)

    results = await asyncio.gather(*(ledger.pre_authorize(user_id, 1) for _ in range(15)))

    assert results.count(True) == 10
    assert await _balances(ledger, user_id) == (Decimal(10), 0, Decimal(10), 0)
    page = await audit_log.query(user_id, operation_type="pre_authorize", limit=100)
    assert page.total == 10
    assert sorted(entry.balance_after for entry in page.entries) == [
        Decimal(n) for n in range(1, 11)
    ]
