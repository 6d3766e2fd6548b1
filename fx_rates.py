from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from functools import lru_cache
from http.client import HTTPException
from typing import Optional, Union
from urllib.request import Request, urlopen

from config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    rates: dict[str, float]  # quote per 1 base, lower-case codes
    rate_date: date
    fetched_at: datetime

    def rate_for(self, quote: str) -> Optional[float]:
        return self.rates.get(quote.lower())


class FxRateService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def quote(
        self, base: str, on_date: Union[date, datetime], *, today: Optional[date] = None
    ) -> FxQuote:
        if isinstance(on_date, datetime):
            on_date = on_date.date()
        today = today or date.today()
        base = base.lower()
        if on_date > today:
            return _fetch_currency_api_quote.__wrapped__(
                base,
                "latest",
                base_url=self.settings.fx_base_url,
                timeout=self.settings.fx_timeout_secs,
            )
        return _fetch_currency_api_quote(
            base,
            on_date.isoformat(),
            base_url=self.settings.fx_base_url,
            timeout=self.settings.fx_timeout_secs,
        )

    def convert(
        self,
        amount: float,
        base: str,
        target: str,
        on_date: Union[date, datetime],
        *,
        today: Optional[date] = None,
    ) -> float:
        """Convert ``amount`` from ``base`` into ``target``.

        Any lookup failure returns the unconverted amount, and a currency
        missing from the rate table converts at 1.0.
        """
        if base.lower() == target.lower():
            return amount
        try:
            quote = self.quote(base, on_date, today=today)
        except RuntimeError:
            logger.exception(f"fx_lookup_failed: base={base} target={target}")
            return amount
        rate = quote.rate_for(target)
        if rate is None:
            logger.warning(
                f"fx_rate_missing: base={base} target={target} date={quote.rate_date}"
            )
            rate = 1.0
        return amount * rate


@lru_cache(maxsize=2048)
def _fetch_currency_api_quote(
    base: str, endpoint: str, *, base_url: str, timeout: float
) -> FxQuote:
    url = f"{base_url}@{endpoint}/v1/currencies/{base}.json"
    req = Request(url, headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (OSError, HTTPException, ValueError) as exc:
        # URLError and dropped connections are OSError; bad bodies are ValueError
        raise RuntimeError(
            f"Failed to fetch FX rates for {base} at {endpoint}"
        ) from exc

    try:
        raw_rates = payload[base]
        effective_date = date.fromisoformat(payload["date"])
        rates = {str(code).lower(): float(value) for code, value in raw_rates.items()}
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise RuntimeError("Unexpected FX provider response") from exc

    return FxQuote(
        provider="currency-api",
        base=base,
        rates=rates,
        rate_date=effective_date,
        fetched_at=fetched_at,
    )
