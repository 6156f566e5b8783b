"""Runtime helpers for code that executes jobs.

This layer wraps the run store for an orchestration process:
- recording one job execution through `JobLogger`
- sweeping runs orphaned by a previous process at startup

Scheduling and process management stay with the caller.
"""
