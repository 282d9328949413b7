import logging

import httpx

logger = logging.getLogger("notifier")


class Notifier:
    """Posts entry/exit trade events to a webhook; logs them when none is configured."""

    def __init__(self, webhook_url: str = "", client: httpx.AsyncClient = None):
        self.webhook = webhook_url
        self.client = client or httpx.AsyncClient(timeout=5.0)

    async def notify_trade(self, entry, event: str, price: float, quantity: int, pnl: float = None, reason: str = ""):
        msg = {
            "event": event,
            "symbol": entry.symbol,
            "option_type": entry.option_type.value,
            "price": price,
            "quantity": quantity,
            "pnl": pnl,
            "reason": reason,
        }
        if not self.webhook:
            logger.info("Trade event: %s", msg)
            return
        try:
            await self.client.post(self.webhook, json=msg)
        except Exception:
            logger.exception("Notifier failed")

    async def close(self):
        await self.client.aclose()
