"""Bridge Finality Worker.

Reconciles storage exchange reports into finalized accounting records under
a distributed lock.
"""

__version__ = "1.0.0"
