from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from trivia_bot.models import Answer, ArbitrationResult

if TYPE_CHECKING:
    from trivia_bot.clients_openai import OpenAIClient

LOGGER = logging.getLogger("trivia_bot")

T = TypeVar("T")

NO_WINNER = "NO_WINNER"
_WINNER_RE = re.compile(r"WINNER:\s*@?(\S+)")


class OracleError(RuntimeError):
    pass


def parse_verdict(text: str) -> ArbitrationResult:
    raw = (text or "").strip()
    if raw == NO_WINNER:
        return ArbitrationResult(winner=None, raw=raw)
    match = _WINNER_RE.search(raw)
    if match:
        return ArbitrationResult(winner=match.group(1), raw=raw)
    # Anything unparseable is treated as no winner.
    return ArbitrationResult(winner=None, raw=raw)


class BaseOracle:
    async def generate_question(self) -> str:
        raise NotImplementedError

    async def arbitrate(self, question: str, answers: list[Answer]) -> ArbitrationResult:
        raise NotImplementedError

    async def explain(self, question: str, answer_text: str) -> str:
        raise NotImplementedError


class OpenAIOracle(BaseOracle):
    def __init__(self, client: "OpenAIClient", timeout_seconds: float = 60.0) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise OracleError(f"{fn.__name__} timed out") from exc
        except OracleError:
            raise
        except Exception as exc:
            raise OracleError(f"{fn.__name__} failed: {exc}") from exc

    async def generate_question(self) -> str:
        question = await self._call(self.client.generate_question)
        if not question:
            raise OracleError("empty question")
        return question

    async def arbitrate(self, question: str, answers: list[Answer]) -> ArbitrationResult:
        verdict = await self._call(
            self.client.judge,
            question,
            [(answer.identity, answer.text) for answer in answers],
        )
        LOGGER.info("oracle_verdict raw=%r", verdict)
        return parse_verdict(verdict)

    async def explain(self, question: str, answer_text: str) -> str:
        return await self._call(self.client.explain, question, answer_text)
