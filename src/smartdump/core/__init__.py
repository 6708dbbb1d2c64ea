from smartdump.core.dumper import Dumper, ProgressCallback, smart_dump
from smartdump.core.workset import Workset

__all__ = [
    "Dumper",
    "ProgressCallback",
    "Workset",
    "smart_dump",
]
