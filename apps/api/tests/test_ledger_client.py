import httpx
import pytest

from carsa_api.domain.errors import ErrorKind, OrchestrationFailure
from carsa_api.models import IdempotencyStatus
from carsa_api.observability.orchestration import get_orchestration_store
from carsa_api.services.ledger import HttpLedgerClient, InMemoryLedgerClient, LedgerError, PurchaseInstruction
from carsa_api.services.orchestration import PurchaseOperation, build_orchestrators

CUSTOMER_WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
MERCHANT_WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


def _instruction(reference: str = "ref-1", redeem: int = 0) -> PurchaseInstruction:
    return PurchaseInstruction(
        reference=reference,
        customer_wallet=CUSTOMER_WALLET,
        merchant_wallet=MERCHANT_WALLET,
        fiat_amount=1000,
        redeem_token_amount=redeem,
        total_value=1000,
        tokens_awarded=100,
        cashback_rate_bps=1000,
    )


@pytest.mark.asyncio
async def test_http_client_posts_instruction_and_returns_signature() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"signature": "sig-abc"})

    client = HttpLedgerClient("https://relay.test/", api_key="k", transport=httpx.MockTransport(handler))
    confirmation = await client.submit_purchase(_instruction())

    assert confirmation.signature == "sig-abc"
    assert confirmation.duplicate is False
    assert seen[0].url.path == "/transactions/purchase"
    assert seen[0].headers["Authorization"] == "Bearer k"


@pytest.mark.asyncio
async def test_http_client_rejection_is_ledger_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"error": "merchant inactive"})

    client = HttpLedgerClient("https://relay.test", transport=httpx.MockTransport(handler))

    with pytest.raises(LedgerError) as excinfo:
        await client.submit_purchase(_instruction())
    assert excinfo.value.reason == "rejected"
    assert "merchant inactive" in excinfo.value.message


@pytest.mark.asyncio
async def test_http_client_recovers_signature_after_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            raise httpx.ReadTimeout("deadline exceeded", request=request)
        assert request.url.path == "/transactions/by-reference/ref-late"
        return httpx.Response(200, json={"signature": "sig-late"})

    client = HttpLedgerClient("https://relay.test", transport=httpx.MockTransport(handler))
    confirmation = await client.submit_purchase(_instruction("ref-late"))

    assert confirmation.signature == "sig-late"
    assert confirmation.duplicate is True


@pytest.mark.asyncio
async def test_http_client_unknown_outcome_raises_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            raise httpx.ReadTimeout("deadline exceeded", request=request)
        return httpx.Response(404)

    client = HttpLedgerClient("https://relay.test", transport=httpx.MockTransport(handler))

    with pytest.raises(LedgerError) as excinfo:
        await client.submit_purchase(_instruction())
    assert excinfo.value.reason == "timeout"


@pytest.mark.asyncio
async def test_http_client_balance_lookup() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith(CUSTOMER_WALLET):
            return httpx.Response(200, json={"amount": 42})
        return httpx.Response(404)

    client = HttpLedgerClient("https://relay.test", transport=httpx.MockTransport(handler))

    assert await client.get_token_balance(CUSTOMER_WALLET) == 42
    assert await client.get_token_balance(MERCHANT_WALLET) == 0


@pytest.mark.asyncio
async def test_in_memory_ledger_deduplicates_by_reference() -> None:
    ledger = InMemoryLedgerClient()

    first = await ledger.submit_purchase(_instruction("ref-dup"))
    second = await ledger.submit_purchase(_instruction("ref-dup"))

    assert second.signature == first.signature
    assert second.duplicate is True
    assert ledger.balances[CUSTOMER_WALLET] == 100
    assert await ledger.find_signature("ref-dup") == first.signature


@pytest.mark.asyncio
async def test_in_memory_ledger_rejects_overdrawn_redemption() -> None:
    ledger = InMemoryLedgerClient()

    with pytest.raises(LedgerError):
        await ledger.submit_purchase(_instruction("ref-poor", redeem=5))
    assert ledger.submissions == []
    assert await ledger.find_signature("ref-poor") is None


def _html_reply_relay(signature_by_reference: dict[str, str]):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, text="<html>ok</html>")
        reference = request.url.path.rsplit("/", 1)[-1]
        if reference in signature_by_reference:
            return httpx.Response(200, json={"signature": signature_by_reference[reference]})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_http_client_unreadable_success_body_is_unavailable() -> None:
    client = HttpLedgerClient("https://relay.test", transport=_html_reply_relay({}))

    with pytest.raises(LedgerError) as excinfo:
        await client.submit_purchase(_instruction("ref-html"))
    assert excinfo.value.reason == "unavailable"


@pytest.mark.asyncio
async def test_http_client_unreadable_success_body_checks_reference() -> None:
    client = HttpLedgerClient("https://relay.test", transport=_html_reply_relay({"ref-html": "sig-html"}))

    confirmation = await client.submit_purchase(_instruction("ref-html"))

    assert confirmation.signature == "sig-html"
    assert confirmation.duplicate is True


@pytest.mark.asyncio
async def test_http_client_unreadable_lookup_bodies_are_ledger_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    client = HttpLedgerClient("https://relay.test", transport=httpx.MockTransport(handler))

    with pytest.raises(LedgerError) as balance_error:
        await client.get_token_balance(CUSTOMER_WALLET)
    with pytest.raises(LedgerError) as lookup_error:
        await client.find_signature("ref-any")
    assert balance_error.value.reason == "unavailable"
    assert lookup_error.value.reason == "unavailable"


@pytest.mark.asyncio
async def test_unreadable_relay_reply_fails_purchase_key(session_factory, merchant) -> None:
    store = get_orchestration_store()
    store.reset()
    client = HttpLedgerClient("https://relay.test", transport=_html_reply_relay({}))
    orchestrators = build_orchestrators(session_factory, client, observability=store)

    outcome = await orchestrators.purchase.process(
        PurchaseOperation(
            merchant_id=merchant.id,
            customer_wallet=CUSTOMER_WALLET,
            fiat_amount=1000,
            idempotency_key="l-html",
        )
    )

    assert isinstance(outcome, OrchestrationFailure)
    assert outcome.kind == ErrorKind.LEDGER
    assert outcome.http_status == 502
    record = await orchestrators.guard.status("l-html")
    assert record.status == IdempotencyStatus.FAILED
