# app/core/dispatch/__init__.py
"""
Dispatch layer -- proactive alerts for neglected high-urgency jobs.

- ``scheduler`` -- DispatchScheduler.run_dispatch_cycle and its summary

Dispatch only reads job state and writes notifications; claiming stays
with the job lifecycle coordinator.
"""
from app.core.dispatch.scheduler import DispatchCycle, DispatchScheduler  # noqa: F401
