"""Bounded-concurrency batch orchestration of the ATX CLI over many repositories.

Why a thread pool and not a job queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Each unit of work spends its whole life waiting on one external ``atx``
process. The orchestrator needs per-item workspace preparation, a retry
policy keyed on exit codes and timeouts, and one append-only ledger that
survives interruption. A broker would add an operational dependency for a
single-machine, CLI-first tool while still leaving all of that as custom
task logic. ``concurrent.futures`` threads supervising child processes, plus
a lock-guarded ledger file, cover the scope.
"""
