"""
Account Pool
Lease lifecycle, budget enforcement and reset pipeline for a pool of AWS accounts.
"""

__version__ = "0.1.0"
