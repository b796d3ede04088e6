from typing import NamedTuple, Optional


class WindowPlan(NamedTuple):
    from_block: int
    to_block: Optional[int]
    # checkpoint value to persist before fetching (first run / reset), else None
    pin: Optional[int]

    @property
    def empty(self) -> bool:
        return self.to_block is None


def _start_block(head: int, genesis_block: Optional[int], lookback: int) -> int:
    if genesis_block is not None:
        return genesis_block
    return max(head - lookback, 0)


def plan_window(
    last_processed: Optional[int],
    head: int,
    *,
    genesis_block: Optional[int] = None,
    lookback: int = 1000,
    max_range: int = 1000,
    reset: bool = False,
    reset_from: Optional[int] = None,
) -> WindowPlan:
    """Compute the next inclusive block window to scan.

    An explicit reset is the only way the start can move behind the stored
    checkpoint; it pins the checkpoint to ``start - 1`` just like a first
    run, so a crash before the first fetch resumes from the same block.
    """
    if max_range < 1:
        raise ValueError("max_range must be >= 1")

    pin: Optional[int] = None
    if reset:
        if reset_from is not None:
            from_block = reset_from
        elif genesis_block is not None:
            from_block = genesis_block
        else:
            from_block = 0
        pin = from_block - 1
    elif last_processed is None:
        from_block = _start_block(head, genesis_block, lookback)
        pin = from_block - 1
    else:
        from_block = last_processed + 1

    if from_block < 0:
        raise ValueError(f"from_block must be non-negative, got {from_block}")

    if from_block > head:
        return WindowPlan(from_block, None, pin)
    to_block = min(from_block + max_range - 1, head)
    return WindowPlan(from_block, to_block, pin)
