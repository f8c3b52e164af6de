"""Coarse embedding clustering used before LLM arbitration of large batches."""

import logging
from typing import Dict, List, Sequence

import numpy as np
from sklearn.cluster import DBSCAN

from moral_graph_backend.config import DBSCAN_EPS, DBSCAN_MIN_SAMPLES

logger = logging.getLogger(__name__)


def coarse_clusters(
    embeddings: Sequence[Sequence[float]],
    eps: float = DBSCAN_EPS,
    min_samples: int = DBSCAN_MIN_SAMPLES,
) -> List[List[int]]:
    """
    Group row indices of `embeddings` by cosine-distance DBSCAN.

    Every index appears in exactly one returned group; noise points come back
    as singleton groups. Groups are ordered by their first index.
    """
    if len(embeddings) == 0:
        return []
    if len(embeddings) == 1:
        return [[0]]

    X = np.asarray(embeddings, dtype=float)
    clustering = DBSCAN(eps=eps, min_samples=min_samples, metric="cosine").fit(X)

    clusters_dict: Dict[int, List[int]] = {}
    groups: List[List[int]] = []
    for idx, label in enumerate(clustering.labels_):
        if label == -1:
            groups.append([idx])
            continue
        if label not in clusters_dict:
            clusters_dict[label] = []
            groups.append(clusters_dict[label])
        clusters_dict[label].append(idx)

    logger.debug(
        "DBSCAN grouped %s embeddings into %s clusters (%s noise)",
        len(embeddings),
        len(clusters_dict),
        int(np.sum(clustering.labels_ == -1)),
    )
    return groups


def chunked(items: Sequence, size: int) -> List[List]:
    """Split `items` into consecutive chunks of at most `size`."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [list(items[start:start + size]) for start in range(0, len(items), size)]
