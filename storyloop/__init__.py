"""
Storyloop - phase-driven orchestration for LLM software-generation pipelines.

Decomposes a requirements document into Epics, Stories and Tasks, then drives
a develop/review/test loop over each Task, escalating to epic and integration
testing and recovering from failures with corrective work.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
