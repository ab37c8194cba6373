# tests/shared/test_ledger.py
from shared.dedupe import MemoryLedger, RedisLedger, ledger_key


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def test_ledger_key_shape():
    assert ledger_key("rules", "1717-0", "tamper") == "rules:1717-0:tamper"
    assert ledger_key("actions", "1717-0", 2) == "actions:1717-0:2"


def test_record_then_seen_and_recall():
    ledger = MemoryLedger(ttl_secs=60, clock=FakeClock())
    assert not ledger.seen("k")
    ledger.record("k", '{"tool": "slack"}')
    assert ledger.seen("k")
    assert ledger.recall("k") == '{"tool": "slack"}'


def test_entries_expire_after_ttl():
    clock = FakeClock()
    ledger = MemoryLedger(ttl_secs=60, clock=clock)
    ledger.record("a")
    clock.t = 30
    ledger.record("b")

    clock.t = 61
    assert not ledger.seen("a")
    assert ledger.seen("b")

    clock.t = 200
    ledger.record("c")
    assert ledger.compact() == 1  # "b"; "a" was already dropped on read
    assert ledger.seen("c")


def test_redis_ledger_sets_prefix_and_ttl():
    class R:
        def __init__(self):
            self.kv, self.ex = {}, {}

        def get(self, key):
            return self.kv.get(key)

        def set(self, key, value, ex=None):
            self.kv[key] = value
            self.ex[key] = ex

    r = R()
    ledger = RedisLedger(r, ttl_secs=3600)
    ledger.record("rules:1-0:a")
    assert r.ex == {"sec:seen:rules:1-0:a": 3600}
    assert ledger.seen("rules:1-0:a")
    assert not ledger.seen("rules:1-0:b")


def test_expired_entries_swept_on_periodic_writes():
    clock = FakeClock()
    ledger = MemoryLedger(ttl_secs=10, clock=clock, compact_every=3)
    ledger.record("a")
    ledger.record("b")

    clock.t = 20
    ledger.record("c")  # third write sweeps "a" and "b"
    assert ledger.compact() == 0
    assert ledger.seen("c")
