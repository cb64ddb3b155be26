import logging
from typing import Dict, List, Optional, Tuple

import torch

# Number of set bits for every byte value
_POPCOUNT_TABLE = torch.tensor([bin(i).count("1") for i in range(256)], dtype=torch.int32)

# Second-best distance used when the train set holds a single descriptor
NO_SECOND_BEST = 2**32 - 1


class Match:
    """Represents a match between two keypoints."""

    def __init__(self, query_idx: int, train_idx: int, distance: float):
        """
        Initialize a match.

        Args:
            query_idx: Index of the keypoint in the query image
            train_idx: Index of the keypoint in the train image
            distance: Distance between the descriptors
        """
        self.query_idx = query_idx
        self.train_idx = train_idx
        self.distance = distance

    def as_tuple(self) -> Tuple[int, int]:
        return (self.query_idx, self.train_idx)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Match):
            return NotImplemented
        return self.as_tuple() == other.as_tuple() and self.distance == other.distance

    def __repr__(self) -> str:
        return f"Match(query_idx={self.query_idx}, train_idx={self.train_idx}, distance={self.distance})"


def hamming_distance(a: torch.Tensor, b: torch.Tensor) -> int:
    """
    Number of differing bits between two packed binary descriptors.

    Args:
        a: uint8 tensor (n_bytes,)
        b: uint8 tensor (n_bytes,)

    Returns:
        Popcount of a XOR b
    """
    if a.shape != b.shape:
        raise ValueError(f"Descriptor shapes differ: {tuple(a.shape)} vs {tuple(b.shape)}")
    xor_result = torch.bitwise_xor(a, b)
    return int(_POPCOUNT_TABLE.to(a.device)[xor_result.long()].sum().item())


def hamming_distance_matrix(
    query: torch.Tensor, train: torch.Tensor, batch_size: int = 128
) -> torch.Tensor:
    """
    Pairwise Hamming distances between two sets of packed binary descriptors.

    Args:
        query: Query descriptors (N, D) uint8
        train: Train descriptors (M, D) uint8
        batch_size: Number of query rows processed at once

    Returns:
        Distance matrix (N, M) int64
    """
    n = query.shape[0]
    m = train.shape[0]
    table = _POPCOUNT_TABLE.to(query.device)
    distances = torch.zeros((n, m), dtype=torch.long, device=query.device)

    # Batches keep the (batch, M, D) XOR tensor small
    for i in range(0, n, batch_size):
        batch_end = min(i + batch_size, n)
        xor_result = torch.bitwise_xor(query[i:batch_end, None, :], train[None, :, :])
        distances[i:batch_end] = table[xor_result.long()].sum(dim=2)

    return distances


class FeatureMatcher:
    """Nearest-neighbour matcher for binary descriptors with Lowe's ratio test.

    Matching is one-directional: every query descriptor is matched to at most
    one train descriptor, there is no cross-check, and several query
    descriptors may share a train descriptor."""

    def __init__(self, config: Dict = None):
        """
        Initialize feature matcher.

        Args:
            config: Configuration dictionary with the following keys:
                - ratio_threshold: Threshold for the ratio test
                - batch_size: Query rows per distance batch
        """
        self.config = config if config is not None else {}
        self.ratio_threshold = self.config.get("ratio_threshold", 0.8)
        self.batch_size = self.config.get("batch_size", 128)

        # Initialize logger
        self.logger = logging.getLogger(self.__class__.__name__)

    def match(
        self,
        query_descriptors: torch.Tensor,
        train_descriptors: torch.Tensor,
        query_mask: Optional[torch.Tensor] = None,
        train_mask: Optional[torch.Tensor] = None,
    ) -> List[Match]:
        """
        Match descriptors between two sets.

        Args:
            query_descriptors: Descriptors from the query image (N, D)
            train_descriptors: Descriptors from the train image (M, D)
            query_mask: Boolean mask for query descriptors (N, )
            train_mask: Boolean mask for train descriptors (M, )

        Returns:
            List of Match objects, ordered by query index
        """
        if (
            query_descriptors.shape[0] > 0
            and train_descriptors.shape[0] > 0
            and query_descriptors.shape[1:] != train_descriptors.shape[1:]
        ):
            raise ValueError(
                f"Descriptor lengths differ: {tuple(query_descriptors.shape[1:])} "
                f"vs {tuple(train_descriptors.shape[1:])}"
            )

        # Apply masks if provided
        if query_mask is not None:
            query_indices = torch.nonzero(query_mask).squeeze(1)
            query_descriptors = query_descriptors[query_indices]
        else:
            query_indices = torch.arange(
                query_descriptors.shape[0], device=query_descriptors.device
            )

        if train_mask is not None:
            train_indices = torch.nonzero(train_mask).squeeze(1)
            train_descriptors = train_descriptors[train_indices]
        else:
            train_indices = torch.arange(
                train_descriptors.shape[0], device=train_descriptors.device
            )

        matches = self._ratio_test_match(query_descriptors, train_descriptors)

        # Map indices back to original positions
        for match in matches:
            match.query_idx = query_indices[match.query_idx].item()
            match.train_idx = train_indices[match.train_idx].item()

        self.logger.debug(
            f"Accepted {len(matches)} of {query_descriptors.shape[0]} query descriptors "
            f"against {train_descriptors.shape[0]} train descriptors"
        )
        return matches

    def _ratio_test_match(
        self, query_descriptors: torch.Tensor, train_descriptors: torch.Tensor
    ) -> List[Match]:
        """
        Keep each query's nearest neighbour if it beats the ratio test.

        Args:
            query_descriptors: Descriptors from the query image (N, D)
            train_descriptors: Descriptors from the train image (M, D)

        Returns:
            List of Match objects
        """
        # Handle empty descriptor sets
        if query_descriptors.shape[0] == 0 or train_descriptors.shape[0] == 0:
            return []

        distances, indices = self._best_two(query_descriptors, train_descriptors)

        matches = []
        for i, ((best, second), best_idx) in enumerate(
            zip(distances.tolist(), indices.tolist())
        ):
            if best < self.ratio_threshold * second:
                matches.append(Match(i, best_idx, best))

        return matches

    def _best_two(
        self, query: torch.Tensor, train: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Find the nearest and second-nearest train descriptor of every query.

        Ties resolve to the earliest train index; a later descriptor at the
        same distance becomes the second best.

        Args:
            query: Query descriptors (N, D)
            train: Train descriptors (M, D)

        Returns:
            Tuple of (distances (N, 2) as [best, second], best indices (N,))
        """
        distances = hamming_distance_matrix(query, train, self.batch_size)
        rows = torch.arange(distances.shape[0], device=distances.device)

        # argmin returns the first minimal index
        best_indices = torch.argmin(distances, dim=1)
        best = distances[rows, best_indices]

        if distances.shape[1] < 2:
            second = torch.full_like(best, NO_SECOND_BEST)
        else:
            others = distances.clone()
            others[rows, best_indices] = NO_SECOND_BEST
            second = others.min(dim=1).values

        return torch.stack([best, second], dim=1), best_indices
