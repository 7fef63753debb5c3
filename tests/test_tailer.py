import json
import os
from datetime import timedelta

from wafplane.core.timeutils import utcnow
from wafplane.models.events import AttackEvent, ThreatEvent
from wafplane.services.ban_engine import BanEngine
from wafplane.services.rule_store import RuleStore
from wafplane.services.settings_service import SettingsService
from wafplane.services.tailer import (
    AttackEventSink,
    CursorState,
    DbCursorStore,
    LogTailer,
    SidecarCursorStore,
    SinkResult,
    ThreatEventSink,
)


class RecordingSink:
    def __init__(self):
        self.batches = []

    def consume(self, lines):
        self.batches.append(list(lines))
        return SinkResult(inserted=len(lines))


class MemoryCursorStore:
    def __init__(self):
        self.states = {}
        self.saved = []

    def load(self, log_path):
        return self.states.get(log_path)

    def save(self, log_path, state):
        self.states[log_path] = state
        self.saved.append(state)


def _append(path, text):
    with open(path, "a", encoding="utf-8") as f:
        f.write(text)


class TestLogTailer:
    def setup_method(self):
        self.sink = RecordingSink()
        self.cursors = MemoryCursorStore()

    def _tailer(self, path, **kwargs):
        return LogTailer(str(path), self.cursors, self.sink, **kwargs)

    def test_missing_file_is_noop(self, tmp_path):
        res = self._tailer(tmp_path / "nope.log").poll()
        assert res.inserted == 0
        assert res.cursor_advanced is False
        assert self.sink.batches == []
        assert self.cursors.saved == []

    def test_reads_only_new_lines(self, tmp_path):
        log = tmp_path / "a.log"
        tailer = self._tailer(log)
        _append(log, "one\ntwo\n")
        assert tailer.poll().inserted == 2
        _append(log, "three\n")
        tailer.poll()
        assert self.sink.batches == [["one", "two"], ["three"]]

        # sin datos nuevos no hay batch
        res = tailer.poll()
        assert res.inserted == 0
        assert len(self.sink.batches) == 2

    def test_cursor_is_monotonic(self, tmp_path):
        log = tmp_path / "a.log"
        tailer = self._tailer(log)
        for i in range(5):
            _append(log, f"line-{i}\n")
            tailer.poll()
        offsets = [s.offset for s in self.cursors.saved]
        assert offsets == sorted(offsets)
        assert offsets[-1] == os.path.getsize(log)

    def test_partial_line_waits_for_newline(self, tmp_path):
        log = tmp_path / "a.log"
        tailer = self._tailer(log)
        _append(log, "complete\npart")
        tailer.poll()
        assert self.sink.batches == [["complete"]]
        assert self.cursors.saved[-1].offset == len("complete\n")

        _append(log, "ial\n")
        tailer.poll()
        assert self.sink.batches[-1] == ["partial"]

    def test_truncation_resets_offset(self, tmp_path):
        log = tmp_path / "a.log"
        tailer = self._tailer(log)
        _append(log, "line-one\nline-two\n")
        tailer.poll()

        with open(log, "w", encoding="utf-8") as f:
            f.write("n\n")
        tailer.poll()
        assert self.sink.batches[-1] == ["n"]
        assert self.cursors.saved[-1].offset == 2

    def test_rotation_resets_offset(self, tmp_path):
        log = tmp_path / "a.log"
        tailer = self._tailer(log)
        _append(log, "a\n")
        tailer.poll()

        os.rename(log, tmp_path / "a.log.1")
        _append(log, "rotated-1\nrotated-2\n")
        tailer.poll()
        assert self.sink.batches[-1] == ["rotated-1", "rotated-2"]
        assert self.cursors.saved[-1].inode == os.stat(log).st_ino

    def test_window_cap_skips_old_bytes(self, tmp_path):
        log = tmp_path / "a.log"
        tailer = self._tailer(log, max_read_bytes=20)
        _append(log, "".join(f"line-{i:02d}\n" for i in range(10)))
        tailer.poll()
        # la ventana arranca a mitad de line-07: ese fragmento se descarta
        assert self.sink.batches == [["line-08", "line-09"]]
        assert self.cursors.saved[-1].offset == os.path.getsize(log)

    def test_read_window_on_line_boundary(self, tmp_path):
        log = tmp_path / "a.log"
        tailer = self._tailer(log, max_read_bytes=16)
        _append(log, "".join(f"line-{i:02d}\n" for i in range(10)))
        tailer.poll()
        assert self.sink.batches == [["line-08", "line-09"]]

    def test_cursor_saved_before_sink(self, tmp_path):
        log = tmp_path / "a.log"
        cursors = self.cursors

        class FailingSink:
            def consume(self, lines):
                assert cursors.saved, "cursor debe persistirse antes del batch"
                raise RuntimeError("boom")

        tailer = LogTailer(str(log), cursors, FailingSink())
        _append(log, "x\n")
        try:
            tailer.poll()
        except RuntimeError:
            pass
        assert cursors.saved[-1].offset == 2


class TestSidecarCursorStore:
    def test_roundtrip_and_atomic_file(self, tmp_path):
        path = tmp_path / "state" / "cursor.json"
        store = SidecarCursorStore(str(path))
        assert store.load("x.log") is None

        store.save("x.log", CursorState(inode=12, offset=345))
        assert json.loads(path.read_text()) == {"inode": 12, "offset": 345}
        assert store.load("x.log") == CursorState(inode=12, offset=345)
        assert [p.name for p in path.parent.iterdir()] == ["cursor.json"]

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "cursor.json"
        path.write_text("{oops")
        assert SidecarCursorStore(str(path)).load("x.log") is None


class TestDbCursorStore:
    def test_roundtrip(self, session_factory):
        store = DbCursorStore(session_factory)
        assert store.load("/var/log/x.log") is None
        store.save("/var/log/x.log", CursorState(inode=7, offset=10))
        store.save("/var/log/x.log", CursorState(inode=7, offset=20))
        assert store.load("/var/log/x.log") == CursorState(inode=7, offset=20)


class TestAttackEventSink:
    def _sink(self, session_factory):
        settings_service = SettingsService(ttl_seconds=0)
        return AttackEventSink(
            session_factory=session_factory,
            settings_service=settings_service,
            ban_engine=BanEngine(RuleStore()),
        )

    def test_batch_duplicates_collapse(self, session_factory, db, make_attack_line):
        sink = self._sink(session_factory)
        line = make_attack_line("198.51.100.20", "bot")
        res = sink.consume([line, line, "garbage"])
        assert res.inserted == 1
        assert db.query(AttackEvent).count() == 1

    def test_threshold_crossing_is_config_affecting(self, session_factory, db, make_attack_line):
        sink = self._sink(session_factory)
        lines = [make_attack_line("198.51.100.21", seconds_ago=50 - i * 10) for i in range(5)]
        res = sink.consume(lines)
        assert res.inserted == 5
        assert res.config_affecting is True
        assert RuleStore().latest_deny(db, "198.51.100.21") is not None

    def test_reingest_does_not_duplicate(self, tmp_path, session_factory, db, make_attack_line):
        log = tmp_path / "waf_attacks.log"
        cursors = DbCursorStore(session_factory)
        tailer = LogTailer(str(log), cursors, self._sink(session_factory))
        _append(log, "\n".join(make_attack_line(f"198.51.100.{i}", "sqli") for i in range(3)) + "\n")

        assert tailer.poll().inserted == 3
        # cursor vuelve a cero (ej. restore de backup): mismo rango otra vez
        cursors.save(str(log), CursorState(inode=os.stat(log).st_ino, offset=0))
        assert tailer.poll().inserted == 0
        assert db.query(AttackEvent).count() == 3

    def test_retention_sweep(self, session_factory, db, make_attack_line):
        old = AttackEvent(
            attack_type="bot",
            ip="192.0.2.50",
            authenticated=0,
            fingerprint="f" * 64,
            occurred_at=utcnow() - timedelta(days=400),
        )
        db.add(old)
        db.commit()

        self._sink(session_factory).consume([make_attack_line("192.0.2.51", "bot")])
        assert [e.ip for e in db.query(AttackEvent).all()] == ["192.0.2.51"]


class TestThreatEventSink:
    def _line(self, **fields):
        base = {
            "ts": utcnow().isoformat(),
            "category": "inbound",
            "rule_id": "inbound.framing",
            "action": "block",
            "reason": "conflicting content-length",
            "src_ip": "203.0.113.4",
        }
        base.update(fields)
        return json.dumps(base)

    def test_inbound_block_is_config_affecting(self, session_factory, db):
        sink = ThreatEventSink(session_factory=session_factory, settings_service=SettingsService(ttl_seconds=0))
        line = self._line()
        res = sink.consume([line, line])
        assert res.inserted == 1
        assert res.config_affecting is True
        assert db.query(ThreatEvent).count() == 1

    def test_log_only_is_not_config_affecting(self, session_factory):
        sink = ThreatEventSink(session_factory=session_factory, settings_service=SettingsService(ttl_seconds=0))
        res = sink.consume([self._line(category="browser", action="log")])
        assert res.inserted == 1
        assert res.config_affecting is False
