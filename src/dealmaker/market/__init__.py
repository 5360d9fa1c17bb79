# src/dealmaker/market/__init__.py
"""
Ask discovery and deal negotiation.

One round: fetch asks -> select one per allowlisted miner -> store random data
under each selected ask and wait for the deal to complete.
"""
