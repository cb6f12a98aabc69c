"""Classes to summarize the error distributions measured when comparing two reconstructions.

An ErrorMetric stores one error distribution (e.g. the rotation error of every common camera), together with its
mean, median and histogram over caller-supplied bucket edges. A MetricsGroup stores a list of related metrics so that
they can be named and saved to JSON together.

Histogram convention: ascending edges e1 < e2 < ... < en split the non-negative reals into the n + 1 buckets
[0, e1), [e1, e2), ..., [en, inf). A value equal to an edge is counted in the bucket starting at that edge.

Authors: Akshay Krishnan
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

import reconcompare.utils.io as io_utils
import reconcompare.utils.logger as logger_utils
from reconcompare.common.exceptions import DegenerateInputError

# Keys to access data and summary in the dictionary representation of metrics.
FULL_DATA_KEY = "full_data"
SUMMARY_KEY = "summary"

# Type hint for a 1D distribution
Distribution1D = Union[np.ndarray, Sequence[Union[int, float]]]

logger = logger_utils.get_logger()


def _format_edge(value: float) -> str:
    return "%g" % value


class Histogram:
    """Counts of values per bucket, for a fixed ascending sequence of bucket edges."""

    def __init__(self, bucket_edges: Sequence[float]) -> None:
        """Creates an empty histogram.

        Args:
            bucket_edges: Strictly ascending, finite, non-negative bucket edges.

        Raises:
            ValueError: If the edges are not strictly ascending, finite and non-negative.
        """
        edges = np.asarray(bucket_edges, dtype=np.float64).reshape(-1)
        if not np.all(np.isfinite(edges)) or np.any(edges < 0):
            raise ValueError(f"Bucket edges must be finite and non-negative, got {list(bucket_edges)}.")
        if np.any(np.diff(edges) <= 0):
            raise ValueError(f"Bucket edges must be strictly ascending, got {list(bucket_edges)}.")
        self._edges = edges
        self._counts = np.zeros(edges.size + 1, dtype=np.int64)

    @property
    def bucket_edges(self) -> np.ndarray:
        return self._edges

    @property
    def counts(self) -> np.ndarray:
        """Number of values in each of the len(bucket_edges) + 1 buckets."""
        return self._counts.copy()

    def add(self, values: Distribution1D) -> None:
        """Adds values to the histogram."""
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        bucket_idxs = np.searchsorted(self._edges, values, side="right")
        self._counts += np.bincount(bucket_idxs, minlength=self._counts.size)

    def bucket_labels(self) -> List[str]:
        """Returns a label per bucket, e.g. ["[0, 1)", "[1, 2)", "[2, inf)"]."""
        lower_edges = ["0"] + [_format_edge(e) for e in self._edges]
        upper_edges = [_format_edge(e) for e in self._edges] + ["inf"]
        return [f"[{lower}, {upper})" for lower, upper in zip(lower_edges, upper_edges)]

    def as_dict(self) -> Dict[str, int]:
        """Returns the histogram as a dict from bucket label to count."""
        return {label: int(count) for label, count in zip(self.bucket_labels(), self._counts)}

    def print_string(self) -> str:
        return "\n".join(f"{label}: {count}" for label, count in self.as_dict().items())


class ErrorMetric:
    """Summary of a 1D error distribution: mean, median, and histogram.

    Errors are sorted ascending on construction, so that the median and any stored data are independent of the order
    in which errors were measured.
    """

    def __init__(
        self,
        name: str,
        errors: Distribution1D,
        bucket_edges: Sequence[float],
        store_full_data: bool = False,
    ) -> None:
        """Creates an ErrorMetric.

        Args:
            name: Name of the metric.
            errors: All values of the metric; non-negative and finite.
            bucket_edges: Ascending histogram bucket edges.
            store_full_data: Whether all the values are kept in the dict representation, or only the summary.

        Raises:
            DegenerateInputError: If `errors` is empty.
            ValueError: If an error is negative or not finite.
        """
        data = np.asarray(errors)
        if data.ndim != 1:
            raise ValueError("Error metrics must be 1D distributions.")
        if data.size == 0:
            raise DegenerateInputError(f"Cannot summarize metric {name} without any values.")
        if not np.issubdtype(data.dtype, np.integer):
            data = data.astype(np.float64)
        if not np.all(np.isfinite(data)) or np.any(data < 0):
            raise ValueError(f"Metric {name} must contain finite, non-negative values.")

        self._name = name
        self._store_full_data = store_full_data
        self._data = np.sort(data)
        self._mean = float(np.sum(data)) / data.size
        self._median = self._data[data.size // 2].item()
        self._histogram = Histogram(bucket_edges)
        self._histogram.add(self._data)

    @property
    def name(self) -> str:
        return self._name

    @property
    def data(self) -> np.ndarray:
        """Sorted values of the metric."""
        return self._data

    @property
    def mean(self) -> float:
        return self._mean

    @property
    def median(self) -> Union[int, float]:
        """Element `len // 2` of the sorted values; never interpolated."""
        return self._median

    @property
    def histogram(self) -> Histogram:
        return self._histogram

    def __len__(self) -> int:
        return int(self._data.size)

    def to_string(self) -> str:
        return "Mean = %f\nMedian = %f\nHistogram:\n%s" % (
            self._mean,
            self._median,
            self._histogram.print_string(),
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "min": self._data[0].item(),
            "max": self._data[-1].item(),
            "median": self._median,
            "mean": self._mean,
            "len": len(self),
            "histogram": self._histogram.as_dict(),
        }

    def get_metric_as_dict(self) -> Dict[str, Any]:
        """Provides a dictionary representation of the metric that can be serialized to JSON.

        The dict contains a single element, for which the key is the name of the metric:
        {
            metric_name: {
               FULL_DATA_KEY: [.. sorted raw data, if stored ..]
               SUMMARY_KEY: {
                    .. mean, median, histogram ..
               }
            }
        }
        """
        metric_dict: Dict[str, Any] = {SUMMARY_KEY: self.summary()}
        if self._store_full_data:
            metric_dict[FULL_DATA_KEY] = self._data.tolist()
        return {self._name: metric_dict}


class MetricsGroup:
    """Stores a list of `ErrorMetric`s which are semantically related, e.g. all errors after Sim(3) alignment.

    A MetricsGroup can be represented as a dictionary that can be serialized:
    {
        "metrics_group_name": {
            dictionary representation of metric1,
            dictionary representation of metric2,
            ...
        }
    }
    """

    def __init__(self, name: str, metrics: Optional[List[ErrorMetric]] = None) -> None:
        self._name = name
        self._metrics = metrics if metrics is not None else []

    @property
    def name(self) -> str:
        return self._name

    @property
    def metrics(self) -> List[ErrorMetric]:
        return self._metrics

    def add_metric(self, metric: ErrorMetric) -> None:
        self._metrics.append(metric)

    def get_metrics_as_dict(self) -> Dict[str, Dict[str, Any]]:
        metrics_dict: Dict[str, Any] = {}
        for metric in self._metrics:
            metrics_dict.update(metric.get_metric_as_dict())
        return {self._name: metrics_dict}

    def save_to_json(self, path: str) -> None:
        """Saves the dictionary representation of the metrics group to json.

        Args:
            path: Path to json file.
        """
        io_utils.save_json_file(path, self.get_metrics_as_dict())
