import asyncio

import numpy as np
import pytest

from polycast.streaming.segment_policy import FlushReason
from polycast.streaming.segmenter import Segment
from polycast.transcription.pool import ReorderBuffer, TranscriptionSessionPool
from polycast.transcription.provider import (
    ProviderAuthError,
    ProviderQuotaError,
    ProviderSessionError,
    TranscriptFragment,
)


def _segment(index: int = 0) -> Segment:
    return Segment(
        samples=np.zeros(1600, dtype=np.int16),
        sample_rate=16000,
        flush_reason=FlushReason.ROLLING_INTERVAL,
        overlap_retained_sec=0.0,
        index=index,
    )


class _FakeSession:
    def __init__(self, provider, number):
        self.provider = provider
        self.number = number
        self.closed = False

    async def transcribe(self, segment):
        seq = segment.sequence_id
        self.provider.seen.append((self.number, seq))
        await asyncio.sleep(self.provider.delays.get(seq, 0.0))
        err = self.provider.failures.get(seq)
        if err is not None:
            raise err
        yield TranscriptFragment(text=f"partial {seq}", is_partial=True, sequence_id=seq)
        yield TranscriptFragment(text=f"final {seq}", is_partial=False, sequence_id=seq)

    async def close(self):
        self.closed = True


class _FakeProvider:
    def __init__(self, delays=None, failures=None):
        self.delays = dict(delays or {})
        self.failures = dict(failures or {})
        self.sessions = []
        self.seen = []

    async def open_session(self, source_language):
        session = _FakeSession(self, len(self.sessions) + 1)
        self.sessions.append(session)
        return session


def _collector():
    out = []

    async def _emit(fragment):
        out.append(fragment)

    return out, _emit


def test_reorder_buffer_releases_finals_in_sequence():
    async def _run():
        out, emit = _collector()
        buf = ReorderBuffer(emit)
        await buf.offer_final(TranscriptFragment("b", False, 2))
        assert out == []
        await buf.offer_final(TranscriptFragment("a", False, 1))
        await buf.mark_failed(4)
        await buf.offer_final(TranscriptFragment("c", False, 3))
        return out, buf

    out, buf = asyncio.run(_run())
    assert [f.sequence_id for f in out] == [1, 2, 3]
    assert buf.next_sequence == 5
    assert buf.skipped_failed == 1


def test_reorder_buffer_only_releases_partials_for_lowest_pending():
    async def _run():
        out, emit = _collector()
        buf = ReorderBuffer(emit)
        assert await buf.offer_partial(TranscriptFragment("later", True, 2)) is False
        assert await buf.offer_partial(TranscriptFragment("now", True, 1)) is True
        return out, buf

    out, buf = asyncio.run(_run())
    assert [f.text for f in out] == ["now"]
    assert buf.partials_dropped == 1


def test_pool_orders_finals_when_sessions_finish_out_of_order():
    async def _run():
        out, emit = _collector()
        provider = _FakeProvider(delays={1: 0.15, 2: 0.0, 3: 0.05})
        pool = TranscriptionSessionPool(provider, emit, size=3)
        stamped = [pool.submit(_segment(i)) for i in range(3)]
        assert await pool.drain(timeout=5.0) is True
        await pool.close()
        return out, provider, stamped

    out, provider, stamped = asyncio.run(_run())
    assert [s.sequence_id for s in stamped] == [1, 2, 3]
    finals = [f.sequence_id for f in out if not f.is_partial]
    assert finals == [1, 2, 3]
    assert sorted(n for n, _ in provider.seen) == [1, 2, 3]


def test_pool_assigns_least_busy_session():
    async def _run():
        out, emit = _collector()
        provider = _FakeProvider(delays={1: 0.1})
        pool = TranscriptionSessionPool(provider, emit, size=2)
        pool.submit(_segment())
        pool.submit(_segment())
        pool.submit(_segment())
        await pool.drain(timeout=5.0)
        await pool.close()
        return provider

    provider = asyncio.run(_run())
    by_session = {}
    for number, seq in provider.seen:
        by_session.setdefault(number, []).append(seq)
    assert by_session[1] == [1, 3]
    assert by_session[2] == [2]


def test_pool_replaces_failed_session_and_skips_its_segment():
    async def _run():
        out, emit = _collector()
        failures = []

        async def _on_failure(exc):
            failures.append(exc)

        provider = _FakeProvider(failures={2: ProviderSessionError("socket dropped")})
        pool = TranscriptionSessionPool(provider, emit, size=1, on_session_failure=_on_failure)
        for i in range(3):
            pool.submit(_segment(i))
        await pool.drain(timeout=5.0)
        await pool.close()
        return out, provider, pool, failures

    out, provider, pool, failures = asyncio.run(_run())
    assert [f.sequence_id for f in out if not f.is_partial] == [1, 3]
    assert pool.replaced_total == 1
    assert len(provider.sessions) == 2
    assert provider.sessions[0].closed is True
    assert len(failures) == 1


def test_pool_segment_timeout_is_a_session_failure():
    async def _run():
        out, emit = _collector()
        provider = _FakeProvider(delays={1: 1.0})
        pool = TranscriptionSessionPool(provider, emit, size=1, segment_timeout_sec=0.05)
        pool.submit(_segment())
        pool.submit(_segment())
        await pool.drain(timeout=5.0)
        await pool.close()
        return out, pool

    out, pool = asyncio.run(_run())
    assert [f.sequence_id for f in out if not f.is_partial] == [2]
    assert pool.failed_total == 1


def test_pool_halts_on_quota_and_rejects_submits():
    async def _run():
        out, emit = _collector()
        errors = []

        async def _on_error(exc):
            errors.append(exc)

        provider = _FakeProvider(delays={1: 0.05}, failures={1: ProviderQuotaError("quota exceeded")})
        pool = TranscriptionSessionPool(provider, emit, size=1, on_error=_on_error)
        pool.submit(_segment())
        pool.submit(_segment())
        await pool.drain(timeout=5.0)
        with pytest.raises(ProviderQuotaError):
            pool.submit(_segment())
        await pool.close()
        return out, pool, errors, provider

    out, pool, errors, provider = asyncio.run(_run())
    assert pool.halted is True
    assert len(errors) == 1
    assert [f for f in out if not f.is_partial] == []
    assert len(provider.sessions) == 1
    assert pool.stats()["halted"] is True


def test_pool_auth_failure_halts_pool():
    async def _run():
        out, emit = _collector()
        errors = []

        async def _on_error(exc):
            errors.append(exc)

        provider = _FakeProvider(failures={1: ProviderAuthError("bad key")})
        pool = TranscriptionSessionPool(provider, emit, size=2, on_error=_on_error)
        pool.submit(_segment())
        await pool.drain(timeout=5.0)
        await pool.close()
        return errors

    errors = asyncio.run(_run())
    assert len(errors) == 1
    assert isinstance(errors[0], ProviderAuthError)


def test_pool_recycles_old_sessions():
    class _Clock:
        t = 0.0

        def __call__(self):
            return self.t

    async def _run():
        out, emit = _collector()
        clock = _Clock()
        provider = _FakeProvider()
        pool = TranscriptionSessionPool(provider, emit, size=1, max_session_age_sec=240.0, clock=clock)
        pool.submit(_segment())
        await pool.drain(timeout=5.0)
        clock.t = 241.0
        pool.submit(_segment())
        await pool.drain(timeout=5.0)
        await pool.close()
        return provider, pool

    provider, pool = asyncio.run(_run())
    assert len(provider.sessions) == 2
    assert pool.recycled_total == 1
    assert provider.sessions[0].closed is True


def test_pool_close_releases_queued_segments():
    async def _run():
        out, emit = _collector()
        provider = _FakeProvider(delays={1: 0.5})
        pool = TranscriptionSessionPool(provider, emit, size=1)
        for _ in range(4):
            pool.submit(_segment())
        await asyncio.sleep(0.05)
        released = await pool.close()
        with pytest.raises(ProviderSessionError):
            pool.submit(_segment())
        return released, provider

    released, provider = asyncio.run(_run())
    assert released == 3
    assert provider.sessions[0].closed is True


def test_pool_treats_transport_errors_as_session_failures():
    async def _run():
        out, emit = _collector()
        failures = []

        async def _on_failure(exc):
            failures.append(exc)

        provider = _FakeProvider(failures={1: OSError("broken pipe")})
        pool = TranscriptionSessionPool(provider, emit, size=1, on_session_failure=_on_failure)
        pool.submit(_segment())
        pool.submit(_segment())
        await pool.drain(timeout=5.0)
        await pool.close()
        return out, pool, failures, provider

    out, pool, failures, provider = asyncio.run(_run())
    assert [f.sequence_id for f in out if not f.is_partial] == [2]
    assert pool.replaced_total == 1
    assert pool.failed_total == 1
    assert len(failures) == 1
    assert isinstance(failures[0], ProviderSessionError)
    assert isinstance(failures[0].__cause__, OSError)
    assert provider.sessions[0].closed is True
