from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from functools import lru_cache
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime


class FxRateService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def quote(self, base: str, quote: str, on_date: date) -> FxQuote:
        base = base.upper()
        quote = quote.upper()
        if base == quote:
            return FxQuote(
                provider="identity",
                base=base,
                quote=quote,
                rate=Decimal("1"),
                rate_date=on_date,
                fetched_at=datetime.now(timezone.utc),
            )

        provider = (self.settings.fx_provider or "frankfurter").lower()
        if provider != "frankfurter":
            raise ValueError(f"Unsupported FX provider: {provider}")

        fetched = _fetch_frankfurter_quote(
            base, quote, on_date, timeout=self.settings.fx_timeout_secs
        )
        markup_bps = self.settings.fx_markup_bps
        if markup_bps:
            factor = Decimal("1") - (Decimal(markup_bps) / Decimal("10000"))
            fetched = FxQuote(
                provider=fetched.provider,
                base=fetched.base,
                quote=fetched.quote,
                rate=(fetched.rate * factor),
                rate_date=fetched.rate_date,
                fetched_at=fetched.fetched_at,
            )
        return fetched

    @staticmethod
    def round_rate(rate: Decimal, places: int = 6) -> Decimal:
        return rate.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


@lru_cache(maxsize=2048)
def _fetch_frankfurter_quote(
    base: str, quote: str, on_date: date, *, timeout: float
) -> FxQuote:
    url = f"https://api.frankfurter.app/{on_date.isoformat()}?from={base}&to={quote}"
    req = Request(url, headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        logger.warning(f"fx_fetch_failed: {base}->{quote} on {on_date}: {exc}")
        raise RuntimeError(
            f"Failed to fetch {base}/{quote} rate from Frankfurter for {on_date}"
        ) from exc

    try:
        rate_value = payload["rates"][quote]
        effective_date = date.fromisoformat(payload["date"])
    except (KeyError, TypeError, ValueError) as exc:
        raise RuntimeError("Unexpected FX provider response") from exc

    return FxQuote(
        provider="frankfurter",
        base=base,
        quote=quote,
        rate=Decimal(str(rate_value)),
        rate_date=effective_date,
        fetched_at=fetched_at,
    )
