"""Processing phases and the orchestrator that sequences them.

Each phase only touches rows missing its own output field, so every phase is
safe to call again after a crash, an error or a partial run.
"""
