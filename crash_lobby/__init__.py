"""
Crash Lobby – multiplayer crash-multiplier prediction rounds.

Modules:
- ledger: round state and payouts
- coordinator: round lifecycle and collaborator calls
- scheduler: timers on a real or manual clock
- fairness: provably fair crash points
- sessions / db: session collaborator interface and local SQL backend
- app: FastAPI surface
"""

__version__ = "1.0.0"
