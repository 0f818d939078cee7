"""Agent scheduler: one asyncio task per agent running observe → plan → act.

Each cycle reads the cult from the ledger, evolves the agent's prompt, plans
2-5 steps and executes them in order. Ledger writes share one serialized
transaction queue; store writes go through the best-effort writer.
"""
from cult_sim.engine.scheduler import AgentScheduler

__all__ = ["AgentScheduler"]
