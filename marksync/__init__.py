"""marksync - browser bookmark synchronization client"""

__version__ = "1.0.0"
