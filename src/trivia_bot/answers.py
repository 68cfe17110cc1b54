from __future__ import annotations

import time

from trivia_bot.models import Answer


class AnswerBuffer:
    """Per-round store of at most one answer per participant identity."""

    def __init__(self, max_chars: int = 1000) -> None:
        self.max_chars = max(1, int(max_chars))
        self._answers: dict[str, Answer] = {}
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def clear(self) -> None:
        self._answers.clear()

    def __len__(self) -> int:
        return len(self._answers)

    def has_answered(self, identity: str) -> bool:
        return identity in self._answers

    def record(self, identity: str, text: str, now: float | None = None) -> bool:
        if not self._open:
            return False
        if identity in self._answers:
            return False
        body = (text or "").strip()
        if not body:
            return False
        self._answers[identity] = Answer(
            identity=identity,
            text=body[: self.max_chars],
            timestamp=now if now is not None else time.time(),
        )
        return True

    def answer_for(self, identity: str) -> Answer | None:
        return self._answers.get(identity)

    def evict(self, older_than: float) -> int:
        stale = [identity for identity, answer in self._answers.items() if answer.timestamp < older_than]
        for identity in stale:
            del self._answers[identity]
        return len(stale)

    def snapshot(self) -> list[Answer]:
        return list(self._answers.values())
