from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SELECTED_CURRENCY_KEY = "selectedCurrency"


class JsonKeyValueStore:
    """Flat key -> text blob store kept in one JSON document on disk.

    This is the storage the app used before the SQL database existed. It is
    still the home of the currency preference.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._data: dict[str, str] = self._read()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.exception(f"kvstore_read_failed: path={self.path}")
            return {}
        if not isinstance(payload, dict):
            logger.warning(f"kvstore_unexpected_document: path={self.path}")
            return {}
        return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in payload.items()}

    def _write(self) -> bool:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(
                json.dumps(self._data, indent=2, sort_keys=True), encoding="utf-8"
            )
            os.replace(tmp, self.path)
        except OSError:
            # the in-memory copy stays authoritative until the next write
            logger.exception(f"kvstore_write_failed: path={self.path}")
            self._discard(tmp)
            return False
        return True

    @staticmethod
    def _discard(tmp: Path) -> None:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            logger.exception(f"kvstore_tmp_cleanup_failed: path={tmp}")

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def contains(self, key: str) -> bool:
        return key in self._data

    def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return self._write()

    def delete(self, key: str) -> bool:
        if key not in self._data:
            return True
        del self._data[key]
        return self._write()


class AppSettings:
    def __init__(self, store: JsonKeyValueStore, default_currency: str = "USD") -> None:
        self.store = store
        self.default_currency = default_currency.upper()

    @property
    def selected_currency(self) -> str:
        return (self.store.get(SELECTED_CURRENCY_KEY) or self.default_currency).upper()

    @selected_currency.setter
    def selected_currency(self, code: str) -> None:
        self.store.set(SELECTED_CURRENCY_KEY, code.strip().upper())
        logger.info(f"currency_selected: code={code.strip().upper()}")
