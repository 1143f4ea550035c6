"""
SerialScan - Serial Number Candidate Resolution

Turns noisy per-frame OCR guesses of an Apple device serial number into a
single locked reading: character disambiguation, serial validation and
multi-frame temporal consensus.
"""

__version__ = "0.1.0"
