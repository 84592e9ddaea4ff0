"""
P2P Interop Harness

Runs a matrix of dialer/listener pairings across native and browser
environments and reports one verdict per combination.
"""

__version__ = "0.1.0"
