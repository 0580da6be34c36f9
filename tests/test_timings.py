import pytest

from ticketgate.infra import timings


@pytest.fixture(autouse=True)
def clean():
    timings.reset()
    yield
    timings.reset()


async def test_timeit_records_durations():
    async with timings.timeit("unit.work"):
        pass
    async with timings.timeit("unit.work"):
        pass
    [agg] = timings.snapshot()
    assert agg["kind"] == "unit.work"
    assert agg["n"] == 2
    assert agg["mean"] >= 0


async def test_timeit_records_on_error():
    with pytest.raises(RuntimeError):
        async with timings.timeit("unit.fail"):
            raise RuntimeError()
    assert [a["kind"] for a in timings.snapshot()] == ["unit.fail"]


def test_samples_are_bounded(monkeypatch):
    monkeypatch.setattr(timings, "MAX_SAMPLES_PER_KIND", 10)
    for i in range(25):
        timings.record_timing("k", float(i))
    [agg] = timings.snapshot()
    assert agg["n"] <= 10


def test_mean_and_std():
    timings.record_timing("k", 1.0)
    timings.record_timing("k", 3.0)
    [agg] = timings.snapshot()
    assert agg["mean"] == 2.0
    assert agg["std"] == pytest.approx(1.4142, rel=1e-3)
