# src/dealmaker/__init__.py
"""
Autonomous storage-deal maker.

Polls a go-filecoin node for miner asks, picks one ask per allowlisted miner,
stores freshly generated random data under each ask and waits for the deal to
complete, forever.
"""

__version__ = "0.1.0"
