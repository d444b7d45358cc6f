# lcm_diffusion/schedulers/__init__.py
from .base import Scheduler, SchedulerState, SchedulerStepResult, SchedulerType
from .lcm_scheduler import LCMScheduler  # explicitly need to import this to trigger registration

__all__ = ['Scheduler', 'SchedulerState', 'SchedulerStepResult', 'SchedulerType', 'LCMScheduler']
