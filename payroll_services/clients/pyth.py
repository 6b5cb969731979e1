"""Pyth Hermes price feed."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from payroll_config.schema import PriceFeedSettings
from payroll_kernel.exceptions import PriceFeedError
from payroll_kernel.logging_config import get_logger
from payroll_services.ports import PriceQuote

logger = get_logger("clients.pyth")

LATEST_PATH = "/api/latest_price_feeds"


def scale_price(raw: str | int, expo: int) -> Decimal:
    """Pyth publishes ``price * 10**-expo`` as an integer string."""
    return Decimal(int(raw)).scaleb(int(expo))


class HermesPriceFeed:
    """Latest USD price for an asset symbol, as exact Decimal."""

    def __init__(
        self,
        settings: PriceFeedSettings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or PriceFeedSettings()
        self.client = client or httpx.Client(
            base_url=self.settings.base_url,
            timeout=self.settings.timeout_seconds,
        )

    def close(self) -> None:
        self.client.close()

    def latest(self, asset_symbol: str) -> PriceQuote:
        feed_id = self.settings.feed_ids.get(asset_symbol.upper())
        if not feed_id:
            raise PriceFeedError(asset_symbol, "no feed configured for asset")

        try:
            response = self.client.get(LATEST_PATH, params={"ids[]": feed_id})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            logger.warning("price_feed_request_failed", extra={
                "asset_symbol": asset_symbol,
                "error": str(exc),
            })
            raise PriceFeedError(asset_symbol, str(exc)) from exc

        quote = self._parse(asset_symbol, feed_id, payload)
        logger.info("price_quote_received", extra={
            "asset_symbol": asset_symbol,
            "usd_price": str(quote.price),
            "as_of": quote.as_of.isoformat(),
        })
        return quote

    @staticmethod
    def _parse(asset_symbol: str, feed_id: str, payload: Any) -> PriceQuote:
        if not isinstance(payload, list) or not payload:
            raise PriceFeedError(asset_symbol, "empty response")
        entry = payload[0]
        price = entry.get("price") if isinstance(entry, dict) else None
        if not isinstance(price, dict):
            raise PriceFeedError(asset_symbol, "missing price object")
        try:
            expo = int(price["expo"])
            value = scale_price(price["price"], expo)
            confidence = scale_price(price["conf"], expo) if "conf" in price else None
            as_of = datetime.fromtimestamp(int(price["publish_time"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise PriceFeedError(asset_symbol, f"malformed price: {exc}") from exc
        if value <= 0:
            raise PriceFeedError(asset_symbol, f"non-positive price {value}")
        return PriceQuote(
            asset_symbol=asset_symbol,
            price=value,
            feed_identifier=entry.get("id") or feed_id,
            as_of=as_of,
            confidence=confidence,
        )
