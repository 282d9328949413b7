import pytest

from src.engine.errors import OrderValidationError
from src.engine.rate_limiter import ApiRateLimiter
from src.execution.execution import OrderExecutionService
from src.execution.simulator import PaperBroker
from src.utils.instruments import LotSizeResolver


class FakeTime:
    def __init__(self):
        self.t = 0.0
        self.sleeps = []

    def __call__(self):
        return self.t

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.t += seconds


def service(broker=None):
    return OrderExecutionService(broker or PaperBroker(), LotSizeResolver("NIFTY"), tag_prefix="test")


def test_format_order_uses_index_lot_size():
    order = service().format_order("NSE:NIFTYBANK24JUN52000CE", 2, "buy", "market", limit_price=310.5)
    assert order.quantity == 60
    assert order.side == "BUY" and order.method == "MARKET"
    assert order.product_type == "INTRADAY"
    assert order.tag.startswith("test-BUY-")
    payload = order.to_payload()
    assert payload["quantity"] == 60 and payload["price"] == 310.5 and payload["validity"] == "DAY"


def test_validation_collects_every_problem():
    svc = service()
    ok = svc.format_order("NSE:NIFTY24JUN24500CE", 1, "BUY")
    assert svc.validate(ok).valid

    bad = svc.format_order("NIFTY24JUN24500CE", 0, "HOLD", "LIMIT", limit_price=0, product_type="FOO")
    result = svc.validate(bad)
    assert not result.valid
    assert len(result.errors) == 5
    assert any("Quantity" in e for e in result.errors)
    assert any("Limit price" in e for e in result.errors)

    ok.validity = "GTC"
    assert svc.validate(ok).errors == ["Validity must be DAY or IOC"]


@pytest.mark.asyncio
async def test_paper_submit_fills_at_reference_price():
    broker = PaperBroker()
    svc = service(broker)
    result = await svc.submit(svc.format_order("NSE:NIFTY24JUN24500CE", 1, "BUY", limit_price=101.25))
    assert result.ok
    assert result.order_id.startswith("PAPER-")
    assert result.fill_price == 101.25
    assert broker.fills[0].quantity == 75


@pytest.mark.asyncio
async def test_submit_failures_come_back_as_results():
    svc = service(PaperBroker(reject_symbols=["NSE:NIFTY24JUN24500CE"]))
    result = await svc.submit(svc.format_order("NSE:NIFTY24JUN24500CE", 1, "BUY"))
    assert not result.ok and "rejected" in result.message

    class Exploding:
        async def place_order(self, payload):
            raise ConnectionError("socket closed")

    svc = service(Exploding())
    result = await svc.submit(svc.format_order("NSE:NIFTY24JUN24500CE", 1, "SELL"))
    assert not result.ok and result.message == "socket closed"


def test_order_summary_mentions_lots_and_price():
    svc = service()
    text = svc.order_summary(svc.format_order("NSE:NIFTY24JUN24500CE", 2, "BUY", "LIMIT", limit_price=99.5))
    assert "150 (2 lots)" in text and "@ 99.50" in text


def test_prepare_raises_with_every_validation_error():
    svc = service()
    order = svc.prepare("NSE:NIFTY24JUN24500CE", 1, "SELL", limit_price=120.0)
    assert order.side == "SELL" and order.quantity == 75

    with pytest.raises(OrderValidationError) as exc:
        svc.prepare("NIFTY24JUN24500CE", 1, "BUY", "LIMIT", limit_price=0)
    assert len(exc.value.errors) == 2
    assert any("EXCHANGE:NAME" in e for e in exc.value.errors)


@pytest.mark.asyncio
async def test_submit_waits_on_the_rate_limiter():
    ft = FakeTime()
    limiter = ApiRateLimiter(min_interval_ms=150, per_minute=200, clock=ft, sleep=ft.sleep)
    broker = PaperBroker()
    svc = OrderExecutionService(broker, LotSizeResolver("NIFTY"), rate_limiter=limiter)
    order = svc.format_order("NSE:NIFTY24JUN24500CE", 1, "BUY", limit_price=100.0)
    assert (await svc.submit(order)).ok
    ft.t = 0.05
    assert (await svc.submit(order)).ok
    assert len(broker.fills) == 2
    assert ft.sleeps == [pytest.approx(0.1)]
    assert limiter.calls_in_window == 2
