from dataclasses import dataclass

from provisioning.schemas.imports import UpsertOptions

CAPACITY_BASE_SIZES = {"low": 100, "medium": 200, "high": 300}

SMALL_INPUT_ROWS = 500
LARGE_INPUT_ROWS = 5000
LARGE_INPUT_FLOOR = 250


@dataclass(frozen=True)
class BatchPlan:
    estimated_rows: int
    use_batching: bool
    chunk_size: int

    def chunk_count(self, row_count: int) -> int:
        if row_count <= 0:
            return 0
        return -(-row_count // self.chunk_size)


def optimal_chunk_size(estimated_rows: int, profile: str) -> int:
    base = CAPACITY_BASE_SIZES[profile]
    if estimated_rows < SMALL_INPUT_ROWS:
        return max(1, min(estimated_rows, base // 2))
    if estimated_rows > LARGE_INPUT_ROWS:
        return max(base, LARGE_INPUT_FLOOR)
    return base


def plan_batches(
    estimated_rows: int,
    options: UpsertOptions,
    *,
    threshold: int,
    default_profile: str,
) -> BatchPlan:
    """
    Decide whether to chunk and how big the chunks are. Advisory and
    deterministic: the same inputs always produce the same plan.
    """
    profile = options.capacity_profile or default_profile
    chunk_size = options.chunk_size or optimal_chunk_size(estimated_rows, profile)
    use_batching = (options.use_batching or estimated_rows > threshold) and estimated_rows > chunk_size
    return BatchPlan(estimated_rows=estimated_rows, use_batching=use_batching, chunk_size=chunk_size)
