"""Autonomous work orchestration engine.

The engine advances a backlog of work items in three steps, repeated on a
timer: the dependency resolver selects items whose dependencies are complete
and that are not part of a cycle; the transformation pipeline runs exactly one
phase (interpret, plan, execute, refine, ask clarification, finalize) of each
selected item through an external CLI agent; the orchestrator loop applies the
resulting status transition and enforces quiet hours, the daily token budget
and the retry limit.

Everything runs on one machine against one SQLite database. A cycle processes
its items sequentially and at most one cycle is in flight at a time.
"""
