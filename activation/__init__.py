"""Trial activation core: provisioning, pipeline state, meetings and batch jobs.

Services take a unit-of-work factory (default db.get_db), an optional `now`
and their outbound collaborators as keyword arguments, so callers and tests
can substitute any of them.
"""
