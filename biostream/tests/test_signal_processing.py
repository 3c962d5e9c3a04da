"""
Unit tests for signal processing components.

Tests:
- FFT engine and engine cache
- Biquad cascades and the filter registry
- Direct and Welch band power, smoother
- Circular buffers
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose, assert_array_equal
from scipy import signal as sps

from biostream.core.exceptions import ValidationError
from biostream.signal_processing.bandpower import (
    BAND_NAMES,
    DB_FLOOR,
    BandPowerEstimator,
    BandSmoother,
    band_bin_range,
    compute_band_powers,
    compute_band_powers_welch,
)
from biostream.signal_processing.buffer import CircularBuffer, CircularBufferStore
from biostream.signal_processing.fft import FFTCache, FFTEngine, next_power_of_two
from biostream.signal_processing.filters import (
    BiquadCascade,
    FilterConfig,
    FilterRegistry,
    available_filters,
    create_filter_instance,
    filter_catalog,
    lookup_sections,
)


def sine(freq, sample_rate, n_samples, amplitude=1.0):
    t = np.arange(n_samples) / sample_rate
    return amplitude * np.sin(2 * np.pi * freq * t)


class TestFFTEngine:
    """Test the radix-2 magnitude spectrum."""

    @pytest.fixture
    def engine(self):
        return FFTEngine(256)

    def test_rejects_non_power_of_two(self):
        with pytest.raises(ValueError):
            FFTEngine(100)
        with pytest.raises(ValueError):
            FFTEngine(1)

    def test_twiddle_tables(self, engine):
        assert engine.cos_table.shape == (128,)
        assert_allclose(engine.cos_table[0], 1.0)
        assert_allclose(engine.sin_table[64], -1.0, atol=1e-12)

    def test_matches_numpy_fft(self, engine):
        rng = np.random.RandomState(0)
        x = rng.randn(256)
        expected = np.abs(np.fft.fft(x))[:128] / 128
        assert_allclose(engine.compute_magnitudes(x), expected, atol=1e-10)

    def test_transform_in_place(self):
        engine = FFTEngine(8)
        real = np.arange(8, dtype=np.float64)
        imag = np.zeros(8)
        engine.transform(real, imag)
        expected = np.fft.fft(np.arange(8))
        assert_allclose(real, expected.real, atol=1e-12)
        assert_allclose(imag, expected.imag, atol=1e-12)

    @pytest.mark.parametrize("k", [1, 5, 32, 100])
    def test_single_bin_sinusoid_peaks_at_bin(self, engine, k):
        x = np.sin(2 * np.pi * k * np.arange(256) / 256)
        mags = engine.compute_magnitudes(x)
        assert abs(int(np.argmax(mags)) - k) <= 1
        assert_allclose(mags[k], 1.0, atol=1e-9)

    def test_length_mismatch_fails(self, engine):
        with pytest.raises(ValueError):
            engine.compute_magnitudes(np.zeros(255))
        with pytest.raises(ValueError):
            engine.transform(np.zeros(256), np.zeros(128))

    def test_next_power_of_two(self):
        assert next_power_of_two(1) == 1
        assert next_power_of_two(200) == 256
        assert next_power_of_two(256) == 256


class TestFFTCache:
    def test_reuses_engines(self):
        cache = FFTCache(max_entries=2)
        assert cache.get(64) is cache.get(64)
        assert len(cache) == 1

    def test_evicts_least_recently_used(self):
        cache = FFTCache(max_entries=2)
        cache.get(16)
        cache.get(32)
        cache.get(16)
        cache.get(64)
        assert 16 in cache
        assert 64 in cache
        assert 32 not in cache

    def test_clear(self):
        cache = FFTCache()
        cache.get(16)
        cache.clear()
        assert len(cache) == 0


class TestBiquadCascade:
    """Test the direct-form II biquad recurrence."""

    @pytest.mark.parametrize("key", ["notch-50", "hp-0.5", "lp-30.0"])
    def test_matches_scipy_sosfilt(self, key):
        sections = lookup_sections(key, 500)
        sos = np.array([[s.b0, s.b1, s.b2, 1.0, s.a1, s.a2] for s in sections])
        x = np.random.RandomState(1).randn(500)

        cascade = BiquadCascade(sections)
        assert_allclose(cascade.process_block(x), sps.sosfilt(sos, x), atol=1e-9)

    def test_notch_suppresses_mains_tone(self):
        cascade = create_filter_instance("notch-50", 500)
        out = cascade.process_block(sine(50, 500, 3000))
        assert np.max(np.abs(out[-500:])) < 0.02

    def test_notch_passes_alpha(self):
        cascade = create_filter_instance("notch-50", 500)
        out = cascade.process_block(sine(10, 500, 3000))
        assert np.max(np.abs(out[-500:])) > 0.9

    def test_lowpass_has_unity_dc_gain(self):
        cascade = create_filter_instance("lp-10.0", 500)
        out = cascade.process_block(np.ones(3000))
        assert_allclose(out[-1], 1.0, atol=1e-3)

    def test_reset_zeroes_state(self):
        cascade = create_filter_instance("hp-1.0", 500)
        first = cascade.process(1.0)
        cascade.process(0.5)
        cascade.reset()
        assert cascade.process(1.0) == pytest.approx(first)

    def test_missing_pair_is_none(self):
        assert create_filter_instance("hp-0.5", 250) is None
        assert create_filter_instance("notch-50", None) is None
        assert create_filter_instance("bogus", 500) is None

    def test_order(self):
        assert create_filter_instance("notch-50", 500).order == 4


class TestFilterCatalog:
    def test_available_filters(self):
        assert set(available_filters(250)) == {"notch-50", "notch-60"}
        assert "hp-0.01" in available_filters(500)
        assert "lp-70.0" in available_filters(500)

    def test_catalog_lists_rates(self):
        catalog = filter_catalog()
        assert set(catalog) == {250, 500}


class TestFilterRegistry:
    """Test per-channel filter chains."""

    @pytest.fixture
    def registry(self):
        return FilterRegistry(max_channels=4)

    def test_unconfigured_channel_passes_through(self, registry):
        assert registry.process(0, 0.75) == 0.75

    def test_pending_until_rate_known(self, registry):
        registry.configure(0, FilterConfig(filter_keys=("notch-50",)))
        chain = registry.get_chain(0)
        assert chain.pending
        assert registry.process(0, 0.5) == 0.5

        registry.set_sampling_rate(500)
        assert not chain.pending
        assert chain.cascades["notch-50"] is not None
        assert registry.process(0, 0.5) != 0.5

    def test_channel_rate_before_config(self, registry):
        assert registry.set_sampling_rate(500, channel=0) == []
        registry.configure(0, FilterConfig(filter_keys=("notch-50",)))
        chain = registry.get_chain(0)
        assert not chain.pending
        assert chain.sampling_rate == 500
        assert chain.cascades["notch-50"] is not None

        registry.configure(1, FilterConfig(filter_keys=("notch-50",)))
        assert registry.get_chain(1).pending

    def test_global_rate_overrides_channel_rate(self, registry):
        registry.set_sampling_rate(250, channel=0)
        registry.set_sampling_rate(500)
        registry.configure(0, FilterConfig(filter_keys=("notch-50",)))
        assert registry.get_chain(0).sampling_rate == 500

    def test_rate_change_keeps_cascade_and_zeroes_state(self, registry):
        registry.configure(0, FilterConfig(filter_keys=("notch-50",), sampling_rate=500))
        cascade = registry.get_chain(0).cascades["notch-50"]
        for v in sine(10, 500, 100):
            registry.process(0, v)

        registry.set_sampling_rate(250, channel=0)
        assert registry.get_chain(0).cascades["notch-50"] is cascade
        assert all(s == 0.0 for s in cascade.z1)
        assert all(s == 0.0 for s in cascade.z2)

    def test_rate_without_coefficients_bypasses(self, registry):
        registry.configure(0, FilterConfig(filter_keys=("hp-0.5",), sampling_rate=500))
        registry.set_sampling_rate(250)
        assert registry.get_chain(0).cascades["hp-0.5"] is None
        assert registry.process(0, 0.3) == 0.3

    def test_disabled_config_bypasses(self, registry):
        registry.configure(0, FilterConfig(enabled=False, filter_keys=("hp-0.5",), sampling_rate=500))
        assert registry.process(0, 0.3) == 0.3

    def test_configure_reports_change(self, registry):
        config = FilterConfig(filter_keys=("hp-0.5",), sampling_rate=500)
        assert registry.configure(1, config)
        assert not registry.configure(1, FilterConfig(filter_keys=("hp-0.5",), sampling_rate=500))
        assert registry.configure(1, FilterConfig(filter_keys=("hp-0.5", "notch-50"), sampling_rate=500))

    def test_configure_many_accepts_camel_case(self, registry):
        changed = registry.configure_many({2: {"enabled": True, "filterKeys": ["lp-30.0"], "samplingRate": 500}})
        assert changed == [2]
        assert registry.describe()[2]["active_filters"] == ["lp-30.0"]

    def test_invalid_channel(self, registry):
        with pytest.raises(ValidationError):
            registry.configure(4, FilterConfig())
        with pytest.raises(ValidationError):
            registry.set_sampling_rate(0)


class TestBandPower:
    """Test direct and Welch band power estimators."""

    def test_band_bin_range_excludes_dc(self):
        start, end = band_bin_range((0.5, 4.0), 500, 256, 128)
        assert start == 1
        assert end == 2

    def test_relative_sums_to_one(self):
        x = np.random.RandomState(3).randn(256)
        result = compute_band_powers(x, 500, 256)
        assert sum(result.relative.values()) == pytest.approx(1.0, abs=1e-9)

    def test_alpha_tone_dominates(self):
        result = compute_band_powers(sine(10, 500, 256), 500, 256)
        assert max(result.relative, key=result.relative.get) == "alpha"

    def test_short_signal_is_zero_padded(self):
        result = compute_band_powers(sine(20, 500, 100), 500, 256)
        assert max(result.relative, key=result.relative.get) == "beta"

    @pytest.mark.parametrize("data", [None, [], np.zeros(256), [np.nan] * 256])
    def test_degenerate_input_is_finite(self, data):
        direct = compute_band_powers(data)
        welch = compute_band_powers_welch(data)
        for result in (direct, welch):
            assert all(v == 0.0 for v in result.raw.values())
            assert all(v == 0.0 for v in result.relative.values())
        assert all(v == DB_FLOOR for v in welch.db.values())

    def test_welch_db_and_relative_bounds(self):
        x = sine(10, 500, 1024) + 0.1 * np.random.RandomState(4).randn(1024)
        result = compute_band_powers_welch(x, 500, 256)
        assert set(result.db) == set(BAND_NAMES)
        assert all(0.0 <= v <= 1.0 for v in result.relative.values())
        assert result.relative["alpha"] > 0.5
        assert all(np.isfinite(v) for v in result.db.values())

    def test_welch_excludes_mains_from_total(self):
        base = sine(10, 500, 2048)
        noisy = base + 3.0 * sine(50, 500, 2048)
        clean = compute_band_powers_welch(base, 500, 256, mains_notch_radius=5.0)
        with_mains = compute_band_powers_welch(noisy, 500, 256, mains_notch_radius=5.0)
        assert with_mains.relative["alpha"] == pytest.approx(clean.relative["alpha"], rel=0.05)

    def test_welch_variance_decreases_with_segments(self):
        rng = np.random.RandomState(5)

        def spread(n_segments):
            totals = []
            for _ in range(60):
                x = rng.randn(64 * n_segments)
                result = compute_band_powers_welch(x, 500, 64, segment_length=64, overlap=0.0)
                totals.append(sum(result.raw.values()))
            return np.var(totals)

        assert spread(1) > spread(4) > spread(16)

    def test_estimator_dispatch(self):
        estimator = BandPowerEstimator(fft_cache=FFTCache())
        x = sine(6, 500, 512)
        assert estimator.estimate(x).db is None
        assert estimator.estimate(x, method="welch").db is not None
        assert 256 in estimator.fft_cache
        with pytest.raises(ValueError):
            estimator.estimate(x, method="multitaper")


class TestBandSmoother:
    def test_moving_average(self):
        smoother = BandSmoother(window=2, bands=("alpha",))
        smoother.update_all({"alpha": 1.0})
        assert smoother.get_all()["alpha"] == pytest.approx(0.5)
        smoother.update_all({"alpha": 3.0})
        assert smoother.get_all()["alpha"] == pytest.approx(2.0)
        smoother.update_all({"alpha": 5.0})
        assert smoother.get_all()["alpha"] == pytest.approx(4.0)

    def test_prefill_starts_at_value(self):
        smoother = BandSmoother(window=128)
        smoother.prefill({"alpha": 0.4, "beta": 0.2})
        values = smoother.get_all()
        assert values["alpha"] == pytest.approx(0.4)
        assert values["beta"] == pytest.approx(0.2)
        assert values["delta"] == 0.0

    def test_non_finite_updates_count_as_zero(self):
        smoother = BandSmoother(window=1, bands=("alpha",))
        smoother.update_all({"alpha": float("nan")})
        assert smoother.get_all()["alpha"] == 0.0

    def test_reset(self):
        smoother = BandSmoother(window=4)
        smoother.prefill({"alpha": 1.0})
        smoother.reset()
        assert all(v == 0.0 for v in smoother.get_all().values())


class TestCircularBuffer:
    """Test circular buffer functionality."""

    @pytest.fixture
    def buffer(self):
        return CircularBuffer(capacity=8)

    def test_initialization(self, buffer):
        assert buffer.capacity == 8
        assert buffer.sweep_index == 0
        assert buffer.current_samples == 0

    def test_append_and_retrieve(self, buffer):
        buffer.append([1, 2, 3])
        assert_array_equal(buffer.get_all(), [1, 2, 3])
        assert buffer.sweep_index == 3

    def test_wraparound_keeps_last_writes(self, buffer):
        buffer.append(np.arange(5))
        buffer.append(np.arange(5, 11))
        assert buffer.is_full
        assert_array_equal(buffer.get_all(), np.arange(3, 11))
        assert buffer.sweep_index == 3

    def test_block_longer_than_capacity(self, buffer):
        buffer.append(np.arange(20))
        assert_array_equal(buffer.get_all(), np.arange(12, 20))

    def test_get_latest(self, buffer):
        buffer.append(np.arange(10))
        assert_array_equal(buffer.get_latest(3), [7, 8, 9])
        with pytest.raises(ValueError):
            buffer.get_latest(9)

    def test_storage_is_never_reallocated(self, buffer):
        storage = buffer.buffer
        buffer.append(np.arange(30))
        buffer.clear()
        assert buffer.buffer is storage
        assert buffer.current_samples == 0


class TestCircularBufferStore:
    @pytest.fixture
    def store(self):
        return CircularBufferStore(capacity=4, channels=[0, 2])

    def test_set_channels(self, store):
        store.set_channels([2, 3])
        assert store.channels() == [2, 3]
        assert 0 not in store

    def test_reset_channel_leaves_others(self, store):
        store.append_channel(0, [1, 2])
        store.append_channel(2, [3, 4])
        assert store.reset_channel(0)
        assert store.get(0).size == 0
        assert_array_equal(store.get(2), [3, 4])
        assert not store.reset_channel(1)

    def test_append_matrix(self, store):
        store.append_matrix([0, 2], np.array([[1.0, 10.0], [2.0, 20.0]]))
        assert_array_equal(store.get(0), [1, 2])
        assert_array_equal(store.get(2), [10, 20])

    def test_snapshot_copies(self, store):
        store.append_channel(0, [1.0])
        snap = store.snapshot()
        snap[0][0] = 99.0
        assert store.get(0)[0] == 1.0
