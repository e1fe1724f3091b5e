"""Fission, lifecycle and lease coordination for generation units.

Why not Celery / Dramatiq / RQ?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Every unit already lives as a row in SQLite with its own status, lease and
retry bookkeeping, and operators inspect, cancel and retry units through that
same row. A broker would become a second source of truth for "who owns unit X"
that must be reconciled with the table after every crash.

Instead, each coordination step is one conditional ``UPDATE ... WHERE`` whose
row count tells the caller whether it won:

- claim: ``pending`` (and lease free or expired) -> ``processing`` + lease;
- complete/fail/requeue: ``processing`` owned by the caller -> next state;
- reclaim: ``processing`` with an expired lease -> ``pending``;
- cancel/retry: guarded on the status the operator saw.

A zero row count means another actor moved first. That is a no-op for the
caller, never an error, and nothing has to be rolled back across units.
"""
