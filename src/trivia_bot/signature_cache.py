from __future__ import annotations

from collections import deque
import logging
from pathlib import Path

LOGGER = logging.getLogger("trivia_bot")


class SignatureCache:
    """Bounded, file-backed log of transaction signatures already inspected.

    The log is plain text, one signature per line, oldest first. Every `mark`
    rewrites the whole file so the on-disk copy never holds more than
    `max_entries` lines. Membership is answered from a set index over the
    retained window; signatures evicted from the window are forgotten.
    """

    def __init__(self, path: str, max_entries: int = 1000) -> None:
        self.path = Path(path)
        self.max_entries = max(1, int(max_entries))
        self._log: deque[str] = deque()
        self._index: set[str] = set()
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        lines = [line.strip() for line in self.path.read_text(encoding="utf-8").splitlines()]
        for signature in lines[-self.max_entries:]:
            if signature and signature not in self._index:
                self._log.append(signature)
                self._index.add(signature)
        LOGGER.info("signature_cache_loaded path=%s entries=%s", self.path, len(self._log))

    def __len__(self) -> int:
        return len(self._log)

    def __contains__(self, signature: object) -> bool:
        return signature in self._index

    def has(self, signature: str) -> bool:
        return signature in self._index

    def mark(self, signature: str) -> None:
        signature = signature.strip()
        if not signature or signature in self._index:
            return
        self._log.append(signature)
        self._index.add(signature)
        while len(self._log) > self.max_entries:
            self._index.discard(self._log.popleft())
        self._persist()

    def entries(self) -> list[str]:
        return list(self._log)

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text("".join(f"{sig}\n" for sig in self._log), encoding="utf-8")
        tmp_path.replace(self.path)
