"""Step execution module: control flow, scheduling and suites."""

from .executor import StepRunner
from .scheduler import ParallelScheduler, group_steps

__all__ = ['StepRunner', 'ParallelScheduler', 'group_steps']
