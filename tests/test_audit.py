"""
Unit tests for the buffered audit logger.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.audit import AuditEvent, AuditLogger


class TestAuditLogger:
    @pytest.mark.asyncio
    async def test_file_only(self, tmp_path):
        """Without a pool, events are written as JSON Lines only."""
        path = tmp_path / "state" / "audit.log"
        audit = AuditLogger(None, log_path=path)

        await audit.log("engine", "pairing_code_issued", {"code_number": 1})
        await audit.log("engine", "sync_failed", {"error": "StoreError"}, success=False)
        await audit.close()

        events = [json.loads(line) for line in path.read_text().splitlines()]
        assert [e["action"] for e in events] == ["pairing_code_issued", "sync_failed"]
        assert events[0]["details"] == {"code_number": 1}
        assert events[1]["success"] is False
        assert "timestamp" in events[0]

    @pytest.mark.asyncio
    async def test_database_write(self, tmp_path):
        conn = MagicMock()
        conn.executemany = AsyncMock()
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
        audit = AuditLogger(pool, log_path=tmp_path / "audit.log")

        await audit.log("engine", "logout")
        await audit.close()

        sql, rows = conn.executemany.await_args.args
        assert "INSERT INTO audit_log" in sql
        assert rows == [("engine", "logout", "{}", True)]

    @pytest.mark.asyncio
    async def test_database_failure_does_not_raise(self, tmp_path):
        conn = MagicMock()
        conn.executemany = AsyncMock(side_effect=OSError("gone"))
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
        audit = AuditLogger(pool, log_path=tmp_path / "audit.log")

        await audit.log("engine", "authenticated")
        await audit.close()

        assert "authenticated" in (tmp_path / "audit.log").read_text()

    @pytest.mark.asyncio
    async def test_log_after_close_dropped(self, tmp_path):
        path = tmp_path / "audit.log"
        audit = AuditLogger(None, log_path=path)
        await audit.close()
        await audit.log("engine", "logout")
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_flush_respects_batch_limit(self, tmp_path):
        conn = MagicMock()
        conn.executemany = AsyncMock()
        pool = MagicMock()
        pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
        pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
        audit = AuditLogger(pool, log_path=tmp_path / "audit.log", flush_batch_size=2)

        for n in range(3):
            await audit.log("engine", "pairing_code_issued", {"code_number": n})
        await audit.close()

        batches = [call.args[1] for call in conn.executemany.await_args_list]
        assert all(len(rows) <= 2 for rows in batches)
        assert [json.loads(row[2])["code_number"] for rows in batches for row in rows] == [0, 1, 2]
        assert len((tmp_path / "audit.log").read_text().splitlines()) == 3

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, tmp_path):
        audit = AuditLogger(None, log_path=tmp_path / "audit.log")
        await audit.log("cli", "logout")
        await audit.close()
        await audit.close()
        assert len((tmp_path / "audit.log").read_text().splitlines()) == 1


class TestAuditEvent:
    def test_row_serialises_details(self):
        event = AuditEvent("engine", "sync_complete", {"messages_stored": 3})
        assert event.as_row() == ("engine", "sync_complete", '{"messages_stored": 3}', True)

    def test_json_line(self):
        line = AuditEvent("engine", "logout", success=False).as_json_line()
        assert line.endswith("\n")
        data = json.loads(line)
        assert data["details"] == {}
        assert data["success"] is False
