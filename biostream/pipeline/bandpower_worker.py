"""
Band-power analysis off the caller's thread.

Requests carry a signal window and analysis parameters; responses carry
raw, relative and smoothed relative band powers (plus dB for Welch). The
worker keeps one persistent smoother per stream id so consecutive windows
of one stream produce a stable trend without mixing in other streams.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from biostream.core.config import settings
from biostream.core.exceptions import ProcessingError, ValidationError
from biostream.core.logging import get_logger
from biostream.signal_processing.bandpower import BandPowerEstimator, BandSmoother
from biostream.signal_processing.fft import FFTCache

logger = get_logger(__name__)

METHODS = ("direct", "welch")


@dataclass
class BandPowerRequest:
    signal: Sequence[float]
    sample_rate: float = 500
    fft_size: int = 256
    smoother_window: int = 128
    method: str = "direct"
    segment_length: Optional[int] = None
    stream: str = "default"

    def __post_init__(self) -> None:
        if self.method not in METHODS:
            raise ValidationError(f"Unknown band power method: {self.method!r}")
        if self.sample_rate <= 0:
            raise ValidationError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.fft_size < 2:
            raise ValidationError(f"fft_size must be >= 2, got {self.fft_size}")
        if self.smoother_window < 1:
            raise ValidationError(f"smoother_window must be >= 1, got {self.smoother_window}")
        if not self.stream:
            raise ValidationError("stream must be a non-empty string")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BandPowerRequest":
        """Accept camelCase keys; ``eeg`` is an alias for ``signal``."""
        signal = data.get("signal", data.get("eeg")) or []
        return cls(
            signal=list(signal),
            sample_rate=data.get("sample_rate", data.get("sampleRate", 500)),
            fft_size=int(data.get("fft_size", data.get("fftSize", 256))),
            smoother_window=int(data.get("smoother_window", data.get("smootherWindow", 128))),
            method=data.get("method", "direct"),
            segment_length=data.get("segment_length", data.get("segmentLength")),
            stream=str(data.get("stream", "default")),
        )


@dataclass
class BandPowerResponse:
    raw: Dict[str, float]
    relative: Dict[str, float]
    smooth: Dict[str, float]
    db: Optional[Dict[str, float]] = None
    method: str = "direct"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "raw": dict(self.raw),
            "relative": dict(self.relative),
            "smooth": dict(self.smooth),
        }
        if self.db is not None:
            out["dB"] = dict(self.db)
        return out


class BandPowerWorker:
    """
    Runs band-power requests on a background thread.

    A single worker thread keeps responses in submission order, which the
    per-stream smoothers rely on. ``process`` runs in the caller's thread.
    """

    def __init__(
        self,
        sample_rate: Optional[float] = None,
        fft_size: Optional[int] = None,
        smoother_window: Optional[int] = None,
        fft_cache: Optional[FFTCache] = None
    ) -> None:
        self.sample_rate = sample_rate or settings.bandpower_sample_rate
        self.fft_size = fft_size or settings.bandpower_fft_size
        self.smoother_window = smoother_window or settings.bandpower_smoother_window
        self.estimator = BandPowerEstimator(
            sample_rate=self.sample_rate,
            fft_size=self.fft_size,
            fft_cache=fft_cache if fft_cache is not None else FFTCache(settings.fft_cache_size),
            mains_frequency=settings.mains_frequency,
            mains_notch_radius=settings.mains_notch_radius,
            overlap=settings.welch_overlap,
        )
        self._smoothers: Dict[str, BandSmoother] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bandpower")
        self.processed = 0
        self.closed = False

    def request(self, signal: Sequence[float], **params: Any) -> BandPowerRequest:
        """Build a request using this worker's defaults for unset parameters."""
        params.setdefault("sample_rate", self.sample_rate)
        params.setdefault("fft_size", self.fft_size)
        params.setdefault("smoother_window", self.smoother_window)
        return BandPowerRequest(signal=signal, **params)

    def process(self, request: BandPowerRequest) -> BandPowerResponse:
        result = self.estimator.estimate(
            request.signal,
            method=request.method,
            sample_rate=request.sample_rate,
            fft_size=request.fft_size,
            segment_length=request.segment_length,
        )

        with self._lock:
            smoother = self._smoothers.get(request.stream)
            if smoother is None or smoother.window != request.smoother_window:
                # Prefill avoids a slow ramp up from zero
                smoother = BandSmoother(request.smoother_window)
                smoother.prefill(result.relative)
                self._smoothers[request.stream] = smoother
            else:
                smoother.update_all(result.relative)
            smooth = smoother.get_all()
            self.processed += 1

        return BandPowerResponse(
            raw=result.raw,
            relative=result.relative,
            smooth=smooth,
            db=result.db,
            method=request.method,
        )

    def submit(
        self,
        request: BandPowerRequest,
        callback: Optional[Callable[[BandPowerResponse], Any]] = None
    ) -> "Future[BandPowerResponse]":
        """
        Queue ``request``; ``callback`` (if given) runs on the worker thread
        before the future completes.
        """
        if self.closed:
            raise ProcessingError("Band power worker is closed")

        def job() -> BandPowerResponse:
            response = self.process(request)
            if callback is not None:
                callback(response)
            return response

        return self._executor.submit(job)

    def reset_smoother(self, stream: Optional[str] = None) -> None:
        """Drop one stream's smoother, or all of them when ``stream`` is None."""
        with self._lock:
            if stream is None:
                self._smoothers.clear()
            else:
                self._smoothers.pop(stream, None)

    @property
    def streams(self) -> List[str]:
        with self._lock:
            return sorted(self._smoothers)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._executor.shutdown(wait=True)
        logger.info("bandpower_worker_closed", processed=self.processed)

    def __enter__(self) -> "BandPowerWorker":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
