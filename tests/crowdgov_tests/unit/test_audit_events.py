"""
Tests for the audit event log.
"""

from crowdgov.core.audit_events import AuditEvent, AuditEventKind, AuditEventLog


def _event(kind=AuditEventKind.VOTE_CAST, actor="bob"):
    return AuditEvent(kind=kind, actor=actor, epoch=4, subject={"proposal_id": "p1"}, changes={"power": 3})


class TestAuditEventLog:
    def test_publish_assigns_sequence_and_id(self):
        log = AuditEventLog()
        log.publish([_event(), _event(actor="carol")])
        events = log.events()
        assert [e.sequence for e in events] == [1, 2]
        assert events[0].event_id == events[0].calculate_event_id()
        assert events[0].event_id != events[1].event_id

    def test_filter_by_kind_and_since(self):
        log = AuditEventLog()
        log.publish([_event(), _event(AuditEventKind.DELEGATED), _event()])
        assert len(log.events(kind=AuditEventKind.VOTE_CAST)) == 2
        assert [e.sequence for e in log.events(since=1, limit=1)] == [2]

    def test_negative_limit_returns_nothing(self):
        log = AuditEventLog()
        log.publish([_event(), _event()])
        assert log.events(limit=-1) == []
        assert len(log.events(limit=0)) == 0

    def test_subscriber_failure_is_contained(self):
        log = AuditEventLog()
        seen = []

        def broken(event):
            raise RuntimeError("subscriber down")

        log.subscribe(broken)
        log.subscribe(seen.append)
        log.publish([_event()])

        assert len(log) == 1
        assert len(seen) == 1

    def test_unsubscribe(self):
        log = AuditEventLog()
        seen = []
        log.subscribe(seen.append)
        log.unsubscribe(seen.append)
        log.publish([_event()])
        assert seen == []

    def test_jsonl_export_and_load(self, tmp_path):
        log = AuditEventLog()
        log.publish([_event(), _event(AuditEventKind.REFUNDED)])
        path = tmp_path / "events.jsonl"
        assert log.export_jsonl(path) == 2

        restored = AuditEventLog()
        assert restored.load_jsonl(path) == 2
        assert [e.to_dict() for e in restored.events()] == [e.to_dict() for e in log.events()]
