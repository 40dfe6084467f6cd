from __future__ import annotations

from dataclasses import dataclass
from multiprocessing.pool import ThreadPool
from typing import List, Optional, Tuple

import numpy as np

from Registration.bspline import cubic_bspline_weights
from Registration.errors import InvalidConfiguration, RegistrationFailed
from Registration.interpolation import physical_gradient, sample, sample_gradient
from Registration.transforms import TransformModel
from Registration.volume import VolumeGrid


SAMPLING_STRATEGIES = ("none", "regular", "random")
PADDING_BINS = 2
MIN_BINS = 5
CHUNK_SIZE = 65536


class JointHistogram:
    """Parzen-windowed joint intensity histogram (Mattes formulation).

    Fixed intensities fall into a single bin (box window); moving intensities
    spread over four bins with cubic B-spline weights summing to 1. Two padding
    bins on each side keep the moving window inside the table.
    """

    def __init__(self, number_of_bins: int, fixed_range: Tuple[float, float], moving_range: Tuple[float, float]) -> None:
        if number_of_bins < MIN_BINS:
            raise InvalidConfiguration(f"number_of_bins must be >= {MIN_BINS}, got {number_of_bins}")
        self.number_of_bins = int(number_of_bins)
        usable = self.number_of_bins - 2 * PADDING_BINS
        self.fixed_min = float(fixed_range[0])
        self.moving_min = float(moving_range[0])
        fixed_span = float(fixed_range[1]) - self.fixed_min
        moving_span = float(moving_range[1]) - self.moving_min
        # constant images put all their mass in one bin
        self.fixed_bin_size = (fixed_span if fixed_span > 0 else 1.0) / usable
        self.moving_bin_size = (moving_span if moving_span > 0 else 1.0) / usable

    def fixed_bins(self, values: np.ndarray) -> np.ndarray:
        term = (values - self.fixed_min) / self.fixed_bin_size + PADDING_BINS
        return np.clip(np.floor(term), PADDING_BINS, self.number_of_bins - PADDING_BINS - 1).astype(np.int64)

    def moving_window(self, values: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """First bin of each sample's 4-bin window, its weights and d(weight)/d(term)."""
        term = (values - self.moving_min) / self.moving_bin_size + PADDING_BINS
        index = np.clip(np.floor(term), PADDING_BINS, self.number_of_bins - 3)
        fraction = np.clip(term - index, 0.0, 1.0)
        weights, derivatives = cubic_bspline_weights(fraction)
        return index.astype(np.int64) - 1, weights, derivatives

    def accumulate(self, fixed_bins: np.ndarray, moving_start: np.ndarray, moving_weights: np.ndarray) -> np.ndarray:
        nbins = self.number_of_bins
        columns = moving_start[:, None] + np.arange(4)
        flat = (fixed_bins[:, None] * nbins + columns).ravel()
        counts = np.bincount(flat, weights=moving_weights.ravel(), minlength=nbins * nbins)
        return counts.reshape(nbins, nbins)


def mutual_information(joint_counts: np.ndarray) -> Tuple[float, np.ndarray]:
    """Mutual information of a joint count table and `log(p(f, m) / p(m))` per bin.

    Bins with zero probability contribute zero information.
    """
    total = float(joint_counts.sum())
    if total <= 0:
        return 0.0, np.zeros_like(joint_counts)
    joint = joint_counts / total
    fixed_marginal = joint.sum(axis=1)
    moving_marginal = joint.sum(axis=0)
    nonzero = joint > 0
    outer = fixed_marginal[:, None] * moving_marginal[None, :]
    mi = float(np.sum(joint[nonzero] * np.log(joint[nonzero] / outer[nonzero])))
    log_ratio = np.zeros_like(joint)
    denom = np.broadcast_to(moving_marginal[None, :], joint.shape)
    log_ratio[nonzero] = np.log(joint[nonzero] / denom[nonzero])
    return mi, log_ratio


@dataclass
class MetricValue:
    value: float
    gradient: Optional[np.ndarray]
    valid_samples: int
    total_samples: int


class MattesMutualInformation:
    """Negative Mattes mutual information between a fixed volume and a transformed moving volume.

    Call `initialize` once per resolution level; `evaluate` then reads the current
    parameters from the transform it was initialised with.
    """

    def __init__(
        self,
        number_of_bins: int = 50,
        sampling_strategy: str = "none",
        sampling_percentage: float = 1.0,
        seed: Optional[int] = None,
        number_of_threads: int = 1,
    ) -> None:
        if sampling_strategy not in SAMPLING_STRATEGIES:
            raise InvalidConfiguration(f"Unknown sampling strategy {sampling_strategy!r}; use one of {SAMPLING_STRATEGIES}")
        if not 0.0 < float(sampling_percentage) <= 1.0:
            raise InvalidConfiguration(f"sampling_percentage must be in (0, 1], got {sampling_percentage}")
        if int(number_of_bins) < MIN_BINS:
            raise InvalidConfiguration(f"number_of_bins must be >= {MIN_BINS}, got {number_of_bins}")
        if int(number_of_threads) < 1:
            raise InvalidConfiguration("number_of_threads must be >= 1")
        self.number_of_bins = int(number_of_bins)
        self.sampling_strategy = sampling_strategy
        self.sampling_percentage = float(sampling_percentage)
        self.seed = seed
        self.number_of_threads = int(number_of_threads)
        self.stage = "metric"
        self.evaluations = 0
        self._transform: Optional[TransformModel] = None

    def initialize(self, fixed: VolumeGrid, moving: VolumeGrid, transform: TransformModel) -> None:
        self.fixed = fixed
        self.moving = moving
        self._transform = transform
        self.sample_points, self.fixed_values = self._select_samples(fixed)
        self.moving_gradient = physical_gradient(moving)
        moving_data = np.asarray(moving.data, dtype=np.float64)
        self.histogram = JointHistogram(
            self.number_of_bins,
            fixed_range=(float(self.fixed_values.min()), float(self.fixed_values.max())),
            moving_range=(float(moving_data.min()), float(moving_data.max())),
        )
        self.fixed_bins = self.histogram.fixed_bins(self.fixed_values)
        self.evaluations = 0

    @property
    def transform(self) -> TransformModel:
        if self._transform is None:
            raise InvalidConfiguration("Metric used before initialize().")
        return self._transform

    @property
    def number_of_samples(self) -> int:
        return int(self.sample_points.shape[0])

    def _select_samples(self, fixed: VolumeGrid) -> Tuple[np.ndarray, np.ndarray]:
        n = fixed.number_of_voxels
        if self.sampling_strategy == "none" or self.sampling_percentage >= 1.0:
            flat = np.arange(n)
        elif self.sampling_strategy == "regular":
            step = max(1, int(round(1.0 / self.sampling_percentage)))
            flat = np.arange(0, n, step)
        else:
            rng = np.random.default_rng(self.seed)
            count = max(1, int(n * self.sampling_percentage))
            flat = np.sort(rng.choice(n, size=count, replace=False))
        indices = fixed.voxel_indices()[flat]
        points = fixed.index_to_physical(indices)
        values = np.asarray(fixed.data, dtype=np.float64).ravel()[flat]
        return points, values

    def _chunks(self) -> List[slice]:
        n = self.number_of_samples
        size = max(1, min(CHUNK_SIZE, -(-n // self.number_of_threads)))
        return [slice(begin, min(n, begin + size)) for begin in range(0, n, size)]

    def _map(self, func, chunks: List[slice]) -> list:
        if self.number_of_threads == 1 or len(chunks) == 1:
            return [func(chunk) for chunk in chunks]
        with ThreadPool(self.number_of_threads) as pool:
            return pool.map(func, chunks)

    def _histogram_pass(self, chunk: slice) -> dict:
        points = self.sample_points[chunk]
        mapped = self.transform.evaluate(points)
        moving_values, inside = sample(self.moving, mapped)
        fixed_bins = self.fixed_bins[chunk][inside]
        start, weights, derivatives = self.histogram.moving_window(moving_values[inside])
        return {
            "counts": self.histogram.accumulate(fixed_bins, start, weights),
            "inside": inside,
            "mapped": mapped[inside],
            "fixed_bins": fixed_bins,
            "start": start,
            "derivatives": derivatives,
        }

    def evaluate(self, with_gradient: bool = True, context: Optional[dict] = None) -> MetricValue:
        """Negative mutual information (and its parameter gradient) at the transform's current parameters."""
        transform = self.transform
        self.evaluations += 1
        chunks = self._chunks()
        partials = self._map(self._histogram_pass, chunks)
        # reduction of per-chunk histograms
        counts = np.zeros((self.number_of_bins, self.number_of_bins), dtype=np.float64)
        for partial in partials:
            counts += partial["counts"]
        valid = int(sum(int(np.count_nonzero(p["inside"])) for p in partials))
        info = {"evaluation": self.evaluations, "valid_samples": valid, "samples": self.number_of_samples}
        info.update(context or {})
        if valid == 0:
            raise RegistrationFailed("All metric samples map outside the moving volume", stage=self.stage, context=info)

        mi, log_ratio = mutual_information(counts)
        if not np.isfinite(mi):
            raise RegistrationFailed("Mutual information is not finite", stage=self.stage, context=info)

        gradient = None
        if with_gradient:
            scale = 1.0 / (valid * self.histogram.moving_bin_size)

            def _gradient_pass(args: Tuple[slice, dict]) -> np.ndarray:
                chunk, partial = args
                if partial["mapped"].shape[0] == 0:
                    return np.zeros(transform.parameter_count())
                columns = partial["start"][:, None] + np.arange(4)
                table = log_ratio[partial["fixed_bins"][:, None], columns]
                # d MI / d (moving intensity) for each sample
                d_mi = np.sum(partial["derivatives"] * table, axis=1) * scale
                image_gradient = sample_gradient(self.moving_gradient, self.moving, partial["mapped"])
                point_gradients = -d_mi[:, None] * image_gradient
                points = self.sample_points[chunk][partial["inside"]]
                return transform.parameter_gradient(points, point_gradients)

            pieces = self._map(_gradient_pass, list(zip(chunks, partials)))
            gradient = np.sum(pieces, axis=0)
            if not np.all(np.isfinite(gradient)):
                raise RegistrationFailed("Metric gradient is not finite", stage=self.stage, context=info)
        return MetricValue(value=-mi, gradient=gradient, valid_samples=valid, total_samples=self.number_of_samples)
