from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any
from urllib.error import HTTPError, URLError

from trivia_bot.http_utils import post_json

LOGGER = logging.getLogger("trivia_bot")

QUESTION_PROMPT = (
    "Generate ONLY a simple trivia question. DO NOT include multiple choice options. "
    "DO NOT include the answer.\n"
    "IMPORTANT: Return ONLY the question with no additional text, no options, and no answers."
)

JUDGE_PROMPT = (
    "You are judging a trivia game. Evaluate if there are any correct answers.\n"
    "If all answers are incorrect or nonsensical, respond with: NO_WINNER\n"
    "If there is a correct answer, respond with: WINNER:username\n\n"
    "Example good response: WINNER:john123\n"
    "Example when no correct answers: NO_WINNER\n\n"
    "Do not include any other text or explanation."
)

EXPLAIN_PROMPT = (
    "You are providing a brief, educational explanation about a trivia answer.\n"
    "Return a single paragraph that's informative but concise. Focus on interesting facts "
    "related to the correct answer.\n"
    "Do not mention if the answer was correct or not. Just provide interesting context about the topic."
)


class OpenAIRequestError(RuntimeError):
    pass


@dataclass
class OpenAIClient:
    base_url: str
    api_key: str
    model: str
    timeout_seconds: float = 15.0
    max_attempts: int = 3
    retry_seconds: float = 2.0

    def chat(self, messages: list[dict[str, str]], *, temperature: float, max_tokens: int | None = None) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        last_exc: Exception | None = None
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                response = post_json(
                    f"{self.base_url}/chat/completions",
                    payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    timeout=self.timeout_seconds,
                )
                return self._extract_content(response)
            except HTTPError as exc:
                last_exc = exc
                if exc.code < 500 and exc.code != 429:
                    break
            except (URLError, TimeoutError) as exc:
                last_exc = exc
            LOGGER.warning("openai_request_retry attempt=%s/%s error=%s", attempt + 1, attempts, last_exc)
            if attempt + 1 < attempts:
                time.sleep(self.retry_seconds * (attempt + 1))
        raise OpenAIRequestError(f"chat completion failed: {last_exc}") from last_exc

    @staticmethod
    def _extract_content(response: Any) -> str:
        try:
            content = response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise OpenAIRequestError("chat completion returned no content") from exc
        return str(content or "").strip()

    def generate_question(self) -> str:
        return self.chat(
            [{"role": "system", "content": QUESTION_PROMPT}],
            temperature=0.9,
            max_tokens=200,
        )

    def judge(self, question: str, answers: list[tuple[str, str]]) -> str:
        listing = "\n".join(f"{identity}: {text}" for identity, text in answers)
        return self.chat(
            [
                {"role": "system", "content": JUDGE_PROMPT},
                {"role": "user", "content": f"Question: {question}\n\nAnswers:\n{listing}"},
            ],
            temperature=0.1,
        )

    def explain(self, question: str, answer_text: str) -> str:
        return self.chat(
            [
                {"role": "system", "content": EXPLAIN_PROMPT},
                {"role": "user", "content": f"Question: {question}\nAnswer given: {answer_text}"},
            ],
            temperature=0.7,
            max_tokens=200,
        )
