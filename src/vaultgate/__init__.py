"""
vaultgate: gated content delivery with short-lived keys, role hierarchy and
real-time moderation.
"""

__version__ = "1.0.0"
