from StagedUploads.core.ratelimit import InMemoryCounterStore, RateLimiter, RedisCounterStore


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class FakeRedis:
    """Runs the acquire script's logic against sorted sets kept in a dict."""

    def __init__(self):
        self.sets = {}
        self.ttls = {}
        self.scripts = []

    def register_script(self, script):
        self.scripts.append(script)

        def run(keys, args):
            key = keys[0]
            limit, window_ms, now_ms, member = int(args[0]), int(args[1]), int(args[2]), args[3]
            members = {m: score for m, score in self.sets.get(key, {}).items() if score > now_ms - window_ms}
            self.sets[key] = members
            if len(members) >= limit:
                return 0
            members[member] = now_ms
            self.ttls[key] = window_ms
            return 1

        return run


def test_sliding_window_frees_slots_as_hits_age_out():
    clock = FakeMonotonic()
    limiter = RateLimiter(InMemoryCounterStore(clock=clock), limit=2, window_seconds=60)

    assert limiter.allow("alice")
    clock.value += 30
    assert limiter.allow("alice")
    assert not limiter.allow("alice")

    clock.value += 31
    assert limiter.allow("alice")
    assert not limiter.allow("alice")


def test_owners_are_counted_separately():
    limiter = RateLimiter(InMemoryCounterStore(clock=FakeMonotonic()), limit=1, window_seconds=60)

    assert limiter.allow("alice")
    assert limiter.allow("bob")
    assert not limiter.allow("alice")


def test_rejected_attempts_do_not_extend_the_window():
    clock = FakeMonotonic()
    store = InMemoryCounterStore(clock=clock)

    assert store.try_acquire("k", 1, 10)
    for _ in range(5):
        clock.value += 1
        assert not store.try_acquire("k", 1, 10)
    clock.value += 5
    assert store.try_acquire("k", 1, 10)


def test_idle_owners_are_forgotten():
    clock = FakeMonotonic()
    store = InMemoryCounterStore(clock=clock)

    for owner in range(100):
        assert store.try_acquire(f"owner:{owner}", 5, 60)
    assert len(store._hits) == 100

    clock.value += 61
    assert store.try_acquire("owner:fresh", 5, 60)
    assert list(store._hits) == ["owner:fresh"]


def test_recent_owners_survive_a_purge():
    clock = FakeMonotonic()
    store = InMemoryCounterStore(clock=clock)

    assert store.try_acquire("owner:old", 1, 60)
    clock.value += 40
    assert store.try_acquire("owner:recent", 1, 60)
    clock.value += 25
    assert store.try_acquire("owner:other", 1, 60)

    assert set(store._hits) == {"owner:recent", "owner:other"}
    assert not store.try_acquire("owner:recent", 1, 60)


def test_redis_counters_are_prefixed_per_owner():
    client = FakeRedis()
    limiter = RateLimiter(RedisCounterStore(client, prefix="test:rate", clock=lambda: 1000.0), limit=2, window_seconds=60)

    assert limiter.allow("alice")
    assert limiter.allow("alice")
    assert not limiter.allow("alice")
    assert limiter.allow("bob")
    assert {key: len(members) for key, members in client.sets.items()} == {
        "test:rate:owner:alice": 2,
        "test:rate:owner:bob": 1,
    }
    assert client.ttls["test:rate:owner:alice"] == 60_000
    assert len(client.scripts) == 1


def test_redis_window_rolls_instead_of_resetting():
    clock = FakeMonotonic()
    client = FakeRedis()
    store = RedisCounterStore(client, prefix="test:rate", clock=clock)

    assert store.try_acquire("k", 2, 60)
    clock.value += 50
    assert store.try_acquire("k", 2, 60)
    clock.value += 15
    # The first hit aged out; the second is still inside the window.
    assert store.try_acquire("k", 2, 60)
    assert not store.try_acquire("k", 2, 60)
    clock.value += 46
    assert store.try_acquire("k", 2, 60)
