"""
OFFLINE SEGMENTER
Batch dynamic-programming partition used when quota tracking is disabled.

Assigns every observed timestamp to one of K contiguous segments, maximizing
the number of observations whose label matches their segment index. Labels
are 0-based segment indices; K = max(label) + 1.

When several boundary sets reach the optimum, the most balanced one
(smallest longest/shortest segment ratio, at most `balance_ratio_limit`) is
preferred; otherwise the first backtracked optimum is kept. Enumeration of
tied optima is capped at `max_optimal_paths`.
"""
import logging
import yaml
from bisect import bisect_left
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger("Segmenter")

NEG_INF = float("-inf")


@dataclass
class SegmenterConfig:
    """Tie-break constants for the offline partition."""
    balance_ratio_limit: float = 5.0
    max_optimal_paths: int = 4096

    @classmethod
    def from_yaml(cls, config_path: str = "config/tracking.yaml") -> "SegmenterConfig":
        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Tracking config not found, using defaults")
            return cls()

        segmenter = config.get("segmenter", {})
        return cls(
            balance_ratio_limit=float(segmenter.get("balance_ratio_limit", 5.0)),
            max_optimal_paths=int(segmenter.get("max_optimal_paths", 4096)),
        )


class OfflineSegmenter:
    """
    Stateless best-path partitioner.

    Usage:
        segmenter = OfflineSegmenter()
        segmenter.find_optimal_partitions({0: [0], 1000: [0], 2000: [1]})
        # -> [2000]
    """

    def __init__(self, config: Optional[SegmenterConfig] = None):
        self.config = config or SegmenterConfig()

    def find_optimal_partitions(self, data: Mapping[int, Sequence[int]]) -> Optional[List[int]]:
        """
        Partition timestamps into K ordered segments.

        Args:
            data: timestamp -> candidate segment labels observed at that instant

        Returns:
            K-1 boundary timestamps (each the first key of a new segment),
            [] when there is nothing to cut, or None when fewer timestamps
            than segments make a partition impossible
        """
        keys = sorted(data)
        n = len(keys)
        if n == 0:
            return []

        labels = [v for values in data.values() for v in (values or [])]
        k = max(labels) + 1 if labels else 1
        if k <= 1:
            return []

        if n < k:
            logger.warning(f"No partition available: {n} timestamps for {k} segments")
            return None

        count = self._prefix_counts(keys, data, k)
        dp, choice = self._fill_table(count, k, n)

        if dp[k][n] == NEG_INF:
            logger.warning("No partition available: final state unreachable")
            return None

        greedy = self._backtrack(choice, k, n)
        optima = self._enumerate_optima(dp, count, k, n)
        if greedy not in optima:
            optima.append(greedy)

        best = self._most_balanced(optima, n)
        cuts = best if best is not None else greedy
        boundaries = [keys[j] for j in cuts]
        logger.debug(f"Partition score {dp[k][n]}, {len(optima)} optimal cut sets, boundaries {boundaries}")
        return boundaries

    def partition_steps(self, data: Mapping[int, Sequence[int]]) -> Optional[List[int]]:
        """Same as find_optimal_partitions, for 1-based step numbers (step n -> segment n-1)."""
        shifted = {ts: [s - 1 for s in steps if s >= 1] for ts, steps in data.items()}
        return self.find_optimal_partitions(shifted)

    # -------------------------------------------------------------------------
    # DP
    # -------------------------------------------------------------------------

    @staticmethod
    def _prefix_counts(keys: List[int], data: Mapping[int, Sequence[int]], k: int) -> List[List[int]]:
        """count[label][i] = occurrences of label among the first i timestamps."""
        n = len(keys)
        count = [[0] * (n + 1) for _ in range(k)]
        for i in range(1, n + 1):
            for v in range(k):
                count[v][i] = count[v][i - 1]
            for v in data[keys[i - 1]] or []:
                if 0 <= v < k:
                    count[v][i] += 1
        return count

    @staticmethod
    def _fill_table(count: List[List[int]], k: int, n: int):
        """dp[seg][i] = best score covering the first i timestamps with seg segments."""
        dp = [[NEG_INF] * (n + 1) for _ in range(k + 1)]
        choice = [[-1] * (n + 1) for _ in range(k + 1)]
        dp[0][0] = 0
        for seg in range(1, k + 1):
            row = count[seg - 1]
            for i in range(seg, n + 1):
                best_score = NEG_INF
                best_cut = -1
                for j in range(seg - 1, i):
                    if dp[seg - 1][j] == NEG_INF:
                        continue
                    total = dp[seg - 1][j] + row[i] - row[j]
                    if total > best_score:
                        best_score = total
                        best_cut = j
                dp[seg][i] = best_score
                choice[seg][i] = best_cut
        return dp, choice

    @staticmethod
    def _backtrack(choice: List[List[int]], k: int, n: int) -> List[int]:
        """Cut indices (first key index of segments 1..K-1) of the stored optimum."""
        cuts = []
        seg, end = k, n
        while seg > 1:
            cut = choice[seg][end]
            if cut < 0:
                break
            cuts.append(cut)
            end = cut
            seg -= 1
        cuts.reverse()
        return cuts

    def _enumerate_optima(self, dp, count, k: int, n: int) -> List[List[int]]:
        """All cut sets reaching dp[k][n], capped at max_optimal_paths."""
        results: List[List[int]] = []
        limit = self.config.max_optimal_paths
        path: List[int] = []

        def walk(seg: int, end: int) -> None:
            if len(results) >= limit:
                return
            if seg == 1:
                # The first segment must start at index 0
                if dp[0][0] + count[0][end] == dp[1][end]:
                    results.append(list(reversed(path)))
                return
            row = count[seg - 1]
            for j in range(seg - 1, end):
                if dp[seg - 1][j] == NEG_INF:
                    continue
                if dp[seg - 1][j] + row[end] - row[j] == dp[seg][end]:
                    path.append(j)
                    walk(seg - 1, j)
                    path.pop()
                    if len(results) >= limit:
                        return

        walk(k, n)
        if len(results) >= limit:
            logger.warning(f"Optimal path enumeration capped at {limit}")
        return results

    def _most_balanced(self, optima: List[List[int]], n: int) -> Optional[List[int]]:
        best = None
        best_ratio = float("inf")
        for cuts in optima:
            edges = [0] + cuts + [n]
            lengths = [edges[i + 1] - edges[i] for i in range(len(edges) - 1)]
            ratio = max(lengths) / min(lengths)
            if ratio <= self.config.balance_ratio_limit and ratio < best_ratio:
                best_ratio = ratio
                best = cuts
        return best


def segments_from_boundaries(keys: Sequence[int], boundaries: Sequence[int]) -> List[List[int]]:
    """Split sorted timestamps into the segments delimited by boundary timestamps."""
    keys = sorted(keys)
    segments = []
    start = 0
    for b in boundaries:
        idx = bisect_left(keys, b)
        segments.append(list(keys[start:idx]))
        start = idx
    segments.append(list(keys[start:]))
    return segments
