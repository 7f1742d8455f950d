"""
.. include:: ../README.md
"""

__all__ = [
    "manifest",
    "store",
    "source",
    "job",
    "gitrepo_controller",
    "exceptions",
]
