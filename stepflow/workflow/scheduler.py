"""
Dependency-aware parallel scheduling.

Steps are split into groups that run one after another; steps inside a
group run concurrently. A step never shares a group with a step whose
`result` it references.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, AbstractSet, Iterable, List, Optional, Set, Tuple

from ..exceptions import ExecutionCancelled
from ..models import DEFAULT_UNSAFE_ACTIONS, ParallelConfig, Step, StepResult, StepStatus
from ..variables.substitution import STEP_HISTORY_VAR, collect_references
from .control_flow import is_fatal

if TYPE_CHECKING:
    from .executor import StepRunner

logger = logging.getLogger(__name__)


def step_references(step: Step) -> Set[str]:
    """
    Base variable names a step reads.

    Scans args, options, the skip expression and control-block conditions.
    """
    refs = collect_references(step.args) | collect_references(step.options)
    if isinstance(step.skip, str):
        refs |= collect_references(step.skip)
    for block in (step.if_block, step.for_block, step.while_block):
        if block is not None:
            refs |= collect_references(block.condition)
    return refs


def is_unsafe(step: Step, unsafe_actions: AbstractSet[str] = DEFAULT_UNSAFE_ACTIONS) -> bool:
    """Steps that must run alone: control blocks and side-effecting actions."""
    return step.has_control_block or step.action in unsafe_actions


def group_steps(
    steps: List[Step],
    available: Iterable[str] = (),
    unsafe_actions: AbstractSet[str] = DEFAULT_UNSAFE_ACTIONS
) -> List[List[Step]]:
    """
    Partition steps into sequentially executed groups.

    A step opens a new group when it references a name that is neither
    already available nor produced by an earlier group, when it references
    or rebinds a name produced inside the current group, or when it is
    unsafe. Unsafe steps always form a group of their own.

    Args:
        steps: Steps in declaration order
        available: Names already set before these steps run
        unsafe_actions: Actions never run concurrently

    Returns:
        Groups of steps, in execution order
    """
    produced_later = {step.result for step in steps if step.result}
    # A pre-existing name that a step in this list rebinds is not "available"
    ready: Set[str] = set(available) - produced_later - {STEP_HISTORY_VAR}

    groups: List[List[Step]] = []
    current: List[Step] = []
    current_outputs: Set[str] = set()
    current_reads: Set[str] = set()

    def flush():
        nonlocal current, current_outputs, current_reads
        if current:
            groups.append(current)
            ready.update(current_outputs)
        current, current_outputs, current_reads = [], set(), set()

    for step in steps:
        refs = step_references(step)

        if is_unsafe(step, unsafe_actions):
            flush()
            current = [step]
            current_outputs = {step.result} if step.result else set()
            flush()
            continue

        unmet = {ref for ref in refs if ref not in ready or ref in current_outputs}
        conflict = bool(step.result) and (step.result in current_outputs or step.result in current_reads)
        if current and (unmet or conflict):
            flush()

        current.append(step)
        current_reads |= refs
        if step.result:
            current_outputs.add(step.result)

    flush()
    return groups


def group_deadline(config: ParallelConfig, token) -> Optional[float]:
    """Seconds a group may run: the shorter of group_timeout and the token's deadline."""
    limits = [config.group_timeout] if config.group_timeout else []
    remaining = token.remaining()
    if remaining is not None:
        limits.append(remaining)
    return min(limits) if limits else None


class ParallelScheduler:
    """
    Executes step lists group by group on a bounded thread pool.
    """

    def __init__(self, runner: 'StepRunner'):
        self.runner = runner

    def execute_parallel(self, steps: List[Step], config: ParallelConfig, token) -> List[StepResult]:
        """
        Execute steps in dependency-aware parallel groups.

        Args:
            steps: Steps to run
            config: Concurrency limit, group timeout and unsafe actions
            token: Cancellation token

        Returns:
            Results of the listed steps, in step order
        """
        groups = group_steps(steps, self.runner.store.snapshot().keys(), config.unsafe_actions)
        logger.info(f"Running {len(steps)} steps in {len(groups)} group(s), max concurrency {config.max_concurrency}")

        results: List[StepResult] = []
        for index, group in enumerate(groups, 1):
            token.raise_if_cancelled()

            if len(group) == 1:
                result = self.runner.execute_step(group[0], token)
                results.append(result)
                if is_fatal(result):
                    token.raise_if_cancelled()
                    break
                continue

            logger.debug(f"Group {index}: {[step.label for step in group]}")
            group_results, aborted = self._run_group(group, config, token)
            for result in group_results:
                self.runner.record(result)
            results.extend(group_results)
            if aborted:
                logger.error(f"Parallel group {index} failed, not running {len(groups) - index} later group(s)")
                # A group cut short by the run's deadline cancels the run
                token.raise_if_cancelled()
                break

        return results

    def _run_group(self, group: List[Step], config: ParallelConfig, token) -> Tuple[List[StepResult], bool]:
        """
        Run one group concurrently.

        Returns:
            (results in step order, whether the group failed fatally)
        """
        max_concurrency = max(1, config.max_concurrency)
        semaphore = threading.BoundedSemaphore(max_concurrency)
        stop = threading.Event()
        group_token = token.child(config.group_timeout or None)

        def worker(step: Step) -> Optional[StepResult]:
            with semaphore:
                if stop.is_set() or group_token.cancelled:
                    return None
                start_time = time.time()
                try:
                    result = self.runner.execute_step(step, group_token, record=False)
                except ExecutionCancelled as e:
                    result = StepResult(step=step, status=StepStatus.FAILED, error=str(e),
                                        duration=time.time() - start_time)
                if is_fatal(result):
                    stop.set()
                return result

        timeout = group_deadline(config, token)
        pool = ThreadPoolExecutor(max_workers=min(max_concurrency, len(group)))
        futures = [pool.submit(worker, step) for step in group]
        done, not_done = wait(futures, timeout=timeout)
        if not_done:
            # Workers still running see a cancelled token and never bind results
            group_token.cancel("parallel group timed out")
            for future in not_done:
                future.cancel()
        pool.shutdown(wait=not not_done)

        results: List[StepResult] = []
        aborted = False
        for step, future in zip(group, futures):
            if future in not_done:
                logger.error(f"Step '{step.label}' timed out after {timeout:.2f}s")
                result = StepResult(
                    step=step, status=StepStatus.FAILED,
                    error=f"timed out after {timeout:.2f}s", duration=timeout
                )
            else:
                result = future.result()
                if result is None:
                    logger.warning(f"Step '{step.label}' not started: an earlier step in its parallel group failed")
                    result = StepResult(
                        step=step, status=StepStatus.SKIPPED,
                        error="not started: parallel group aborted after a failure"
                    )
            aborted = aborted or is_fatal(result)
            results.append(result)

        return results, aborted
