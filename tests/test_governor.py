import threading

import pytest

from polyglot_sandbox.governor import ConcurrencyGovernor, OutputGovernor


def test_try_acquire_respects_limit() -> None:
    governor = ConcurrencyGovernor(limit=2)
    assert governor.try_acquire() is True
    assert governor.try_acquire() is True
    assert governor.try_acquire() is False
    assert governor.active == 2

    governor.release()
    assert governor.active == 1
    assert governor.try_acquire() is True


def test_release_without_acquire_is_an_error() -> None:
    governor = ConcurrencyGovernor(limit=1)
    with pytest.raises(RuntimeError, match="without a matching acquire"):
        governor.release()


def test_limit_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ConcurrencyGovernor(limit=0)


def test_concurrent_acquires_never_exceed_limit() -> None:
    governor = ConcurrencyGovernor(limit=3)
    granted: list[bool] = []
    lock = threading.Lock()
    start = threading.Barrier(20)

    def _grab() -> None:
        start.wait()
        ok = governor.try_acquire()
        with lock:
            granted.append(ok)

    threads = [threading.Thread(target=_grab) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert granted.count(True) == 3
    assert governor.active == 3


def test_output_governor_accumulates_until_ceiling() -> None:
    out = OutputGovernor(limit_bytes=10)
    assert out.feed(b"hello") == "hello"
    assert out.exceeded is False
    assert out.feed("world!!") == "world"
    assert out.exceeded is True
    assert out.text == "helloworld"
    assert out.size == 10
    # Nothing is taken once the ceiling has been crossed.
    assert out.feed(b"more") == ""
    assert out.size == 10


def test_output_governor_exact_fit_is_not_exceeded() -> None:
    out = OutputGovernor(limit_bytes=4)
    out.feed(b"abcd")
    assert out.exceeded is False
    out.feed(b"")
    assert out.exceeded is False


def test_output_governor_keeps_split_multibyte_characters() -> None:
    out = OutputGovernor(limit_bytes=100)
    encoded = "héllo".encode("utf-8")
    out.feed(encoded[:2])
    out.feed(encoded[2:])
    out.close()
    assert out.text == "héllo"


def test_output_governor_rejects_negative_limit() -> None:
    with pytest.raises(ValueError):
        OutputGovernor(limit_bytes=-1)
