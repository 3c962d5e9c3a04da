"""
Property-based tests for buffer, normalization, band power and counter invariants.
"""

import math

import numpy as np
from hypothesis import given, settings, strategies as st
from numpy.testing import assert_array_equal

from biostream.pipeline.diagnostics import CounterMonitor
from biostream.pipeline.models import COUNTER_MODULUS, ChannelSample
from biostream.pipeline.normalizer import SampleNormalizer
from biostream.signal_processing.bandpower import BAND_NAMES, compute_band_powers
from biostream.signal_processing.buffer import CircularBuffer
from biostream.signal_processing.filters import FilterRegistry

finite = st.floats(min_value=-1e3, max_value=1e3, allow_nan=False, allow_infinity=False)


@given(
    capacity=st.integers(min_value=1, max_value=64),
    chunks=st.lists(st.lists(finite, max_size=80), max_size=12),
)
def test_buffer_holds_last_writes_in_order(capacity, chunks):
    buf = CircularBuffer(capacity)
    written = []
    for chunk in chunks:
        buf.append(chunk)
        written.extend(chunk)

    expected = np.asarray(written[-capacity:] if written else [], dtype=np.float64)
    assert_array_equal(buf.get_all(), expected)
    assert buf.current_samples == min(capacity, len(written))


@given(
    values=st.lists(st.integers(min_value=0, max_value=2 ** 16), min_size=4, max_size=4),
    registered=st.sets(st.integers(min_value=0, max_value=3)),
    bits=st.one_of(st.none(), st.integers(min_value=1, max_value=24)),
)
def test_unregistered_channels_are_zero(values, registered, bits):
    normalizer = SampleNormalizer(4, FilterRegistry(max_channels=4), adc_bits=bits)
    out = normalizer.normalize(ChannelSample.from_record(values, 4), registered)
    for ch in range(4):
        if ch not in registered:
            assert out.channels[ch] == 0.0
        else:
            assert math.isfinite(out.channels[ch])


@given(values=st.lists(st.integers(min_value=0, max_value=2 ** 14 - 1), min_size=1, max_size=50))
def test_inferred_scaling_stays_in_range(values):
    normalizer = SampleNormalizer(1, FilterRegistry(max_channels=1))
    for value in values:
        out = normalizer.normalize(ChannelSample.from_record([value], 1), {0})
        assert -1.0 <= out.channels[0] <= 1.0


@settings(max_examples=50, deadline=None)
@given(signal=st.lists(finite, min_size=1, max_size=300))
def test_relative_band_powers_sum_to_one(signal):
    result = compute_band_powers(signal, sample_rate=500, fft_size=256)
    total = sum(result.relative.values())
    assert set(result.relative) == set(BAND_NAMES)
    assert all(0.0 <= v <= 1.0 for v in result.relative.values())
    assert total == 0.0 or abs(total - 1.0) < 1e-6


@given(
    start=st.integers(min_value=0, max_value=COUNTER_MODULUS - 1),
    steps=st.lists(st.integers(min_value=1, max_value=20), max_size=100),
    split=st.integers(min_value=0, max_value=100),
)
def test_counter_gaps_are_counted_across_wraps(start, steps, split):
    counters = [start]
    for step in steps:
        counters.append((counters[-1] + step) % COUNTER_MODULUS)

    monitor = CounterMonitor(report_interval=60.0, clock=lambda: 0.0)
    split = min(split, len(counters))
    monitor.check(counters[:split])
    monitor.check(counters[split:])
    assert monitor.total_missing == sum(step - 1 for step in steps)
