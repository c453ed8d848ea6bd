import logging
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from typing import Any, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

ProgressFn = Callable[[int, int], None]


def _cancelled(cancel) -> bool:
    return cancel is not None and cancel.is_set()


def evaluate_many(
    fn: Callable[[Any], Any],
    items: Sequence[Any],
    max_workers: int = 1,
    on_progress: Optional[ProgressFn] = None,
    cancel=None,
) -> List[Optional[Any]]:
    """Apply fn to every item, optionally across worker processes.

    Results come back in input order. `cancel` is anything with is_set()
    (a threading.Event works); once set, items not yet started are skipped
    and their slot stays None. Runs already in flight finish normally.
    fn and items must be picklable when max_workers > 1.
    """
    total = len(items)
    results: List[Optional[Any]] = [None] * total
    done = 0

    if max_workers <= 1 or total <= 1:
        for i, item in enumerate(items):
            if _cancelled(cancel):
                logger.warning("Evaluation cancelled after %d/%d runs", done, total)
                break
            results[i] = fn(item)
            done += 1
            if on_progress:
                on_progress(done, total)
        return results

    if _cancelled(cancel):
        logger.warning("Evaluation cancelled after 0/%d runs", total)
        return results

    with ProcessPoolExecutor(max_workers=max_workers) as pool:
        pending = {}
        next_idx = 0

        # keep at most max_workers runs queued so cancellation stays cheap
        while next_idx < total and len(pending) < max_workers:
            pending[pool.submit(fn, items[next_idx])] = next_idx
            next_idx += 1

        while pending:
            finished, _ = wait(list(pending), return_when=FIRST_COMPLETED)
            for fut in finished:
                idx = pending.pop(fut)
                results[idx] = fut.result()
                done += 1
                if on_progress:
                    on_progress(done, total)

            if _cancelled(cancel):
                if next_idx < total:
                    logger.warning("Evaluation cancelled after %d/%d runs", done, total)
                next_idx = total
                for fut in list(pending):
                    if fut.cancel():
                        pending.pop(fut)

            while next_idx < total and len(pending) < max_workers:
                pending[pool.submit(fn, items[next_idx])] = next_idx
                next_idx += 1

    return results
