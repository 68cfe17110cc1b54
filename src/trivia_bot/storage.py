from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import json
import sqlite3
from typing import Any

from trivia_bot.models import PayoutAttempt, PayoutStatus


class Storage:
    def __init__(self, database_path: str) -> None:
        self.path = Path(database_path)
        if database_path != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(database_path)
        self.conn.row_factory = sqlite3.Row
        self._create_schema()

    def _create_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.executescript(
            """
            CREATE TABLE IF NOT EXISTS rounds (
              round_id TEXT PRIMARY KEY,
              started_at TEXT NOT NULL,
              participants TEXT NOT NULL,
              prize_pool REAL NOT NULL,
              question TEXT NOT NULL DEFAULT '',
              winner TEXT NOT NULL DEFAULT '',
              outcome TEXT NOT NULL DEFAULT 'open',
              finished_at TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS payouts (
              round_id TEXT NOT NULL,
              winner TEXT NOT NULL,
              destination TEXT NOT NULL,
              amount REAL NOT NULL,
              signature TEXT NOT NULL DEFAULT '',
              attempts INTEGER NOT NULL,
              status TEXT NOT NULL,
              reason TEXT NOT NULL DEFAULT '',
              payload TEXT NOT NULL DEFAULT '',
              last_valid_height INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY (round_id, winner)
            );

            CREATE TABLE IF NOT EXISTS bot_state (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def _now() -> str:
        return datetime.now(tz=timezone.utc).isoformat()

    def record_round_started(
        self,
        *,
        round_id: str,
        participants: set[str],
        prize_pool: float,
    ) -> None:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO rounds (round_id, started_at, participants, prize_pool)
            VALUES (?, ?, ?, ?)
            """,
            (
                round_id,
                self._now(),
                json.dumps(sorted(participants), separators=(",", ":")),
                float(prize_pool),
            ),
        )
        self.conn.commit()

    def record_round_question(self, round_id: str, question: str) -> None:
        self.conn.execute(
            "UPDATE rounds SET question = ? WHERE round_id = ?",
            (question, round_id),
        )
        self.conn.commit()

    def record_round_finished(self, round_id: str, outcome: str, winner: str | None = None) -> None:
        self.conn.execute(
            """
            UPDATE rounds SET outcome = ?, winner = ?, finished_at = ?
            WHERE round_id = ?
            """,
            (outcome, winner or "", self._now(), round_id),
        )
        self.conn.commit()

    def load_payout(self, round_id: str, winner: str) -> PayoutAttempt | None:
        row = self.conn.execute(
            "SELECT * FROM payouts WHERE round_id = ? AND winner = ?",
            (round_id, winner),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_attempt(row)

    def save_payout(self, attempt: PayoutAttempt) -> None:
        now = self._now()
        self.conn.execute(
            """
            INSERT INTO payouts (
              round_id, winner, destination, amount, signature, attempts,
              status, reason, payload, last_valid_height, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(round_id, winner) DO UPDATE SET
              destination=excluded.destination,
              amount=excluded.amount,
              signature=excluded.signature,
              attempts=excluded.attempts,
              status=excluded.status,
              reason=excluded.reason,
              payload=excluded.payload,
              last_valid_height=excluded.last_valid_height,
              updated_at=excluded.updated_at
            """,
            (
                attempt.round_id,
                attempt.winner,
                attempt.destination,
                float(attempt.amount),
                attempt.signature or "",
                int(attempt.attempts),
                attempt.status.value,
                attempt.reason,
                attempt.payload,
                int(attempt.last_valid_height),
                now,
                now,
            ),
        )
        self.conn.commit()

    def pending_payouts(self) -> list[PayoutAttempt]:
        rows = self.conn.execute(
            """
            SELECT * FROM payouts
            WHERE status IN (?, ?) AND signature != ''
            ORDER BY created_at ASC
            """,
            (PayoutStatus.SUBMITTED.value, PayoutStatus.UNKNOWN.value),
        ).fetchall()
        return [self._row_to_attempt(row) for row in rows]

    @staticmethod
    def _row_to_attempt(row: sqlite3.Row) -> PayoutAttempt:
        return PayoutAttempt(
            round_id=str(row["round_id"]),
            winner=str(row["winner"]),
            destination=str(row["destination"]),
            amount=float(row["amount"]),
            signature=str(row["signature"]) or None,
            attempts=int(row["attempts"]),
            status=PayoutStatus(str(row["status"])),
            reason=str(row["reason"]),
            payload=str(row["payload"]),
            last_valid_height=int(row["last_valid_height"]),
        )

    def highest_payout(self) -> float:
        row = self.conn.execute(
            "SELECT value FROM bot_state WHERE key = 'highest_payout'"
        ).fetchone()
        if row is None:
            return 0.0
        try:
            return float(row["value"])
        except (TypeError, ValueError):
            return 0.0

    def set_highest_payout(self, amount: float) -> None:
        self.conn.execute(
            """
            INSERT INTO bot_state (key, value) VALUES ('highest_payout', ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """,
            (repr(float(amount)),),
        )
        self.conn.commit()

    def report(self, window_hours: int) -> dict[str, Any]:
        cutoff = (datetime.now(tz=timezone.utc) - timedelta(hours=window_hours)).isoformat()
        outcomes: dict[str, int] = {}
        for row in self.conn.execute(
            """
            SELECT outcome, COUNT(*) AS n FROM rounds
            WHERE started_at >= ?
            GROUP BY outcome
            """,
            (cutoff,),
        ).fetchall():
            outcomes[str(row["outcome"])] = int(row["n"])

        payouts: dict[str, dict[str, float]] = {}
        for row in self.conn.execute(
            """
            SELECT status, COUNT(*) AS n, COALESCE(SUM(amount), 0) AS total
            FROM payouts
            WHERE created_at >= ?
            GROUP BY status
            """,
            (cutoff,),
        ).fetchall():
            payouts[str(row["status"])] = {
                "count": int(row["n"]),
                "amount_sol": round(float(row["total"]), 9),
            }

        unresolved = [
            {
                "round_id": attempt.round_id,
                "winner": attempt.winner,
                "signature": attempt.signature,
                "amount_sol": attempt.amount,
            }
            for attempt in self.pending_payouts()
        ]
        return {
            "window_hours": window_hours,
            "rounds": outcomes,
            "rounds_total": sum(outcomes.values()),
            "payouts": payouts,
            "unresolved_payouts": unresolved,
            "highest_payout_sol": self.highest_payout(),
        }
