"""converge — declarative system-state reconciler.

Computes the minimal set of package, file and service changes needed to bring
a machine in line with its declared state, and applies them as one atomic
transaction with rollback on partial failure.
"""

__version__ = "0.3.0"
