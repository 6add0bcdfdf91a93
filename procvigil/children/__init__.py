"""Child reconciliation — discover, watch and retire a process's children."""

from procvigil.children.childset import ChildProcess, ChildSet

__all__ = ["ChildProcess", "ChildSet"]
