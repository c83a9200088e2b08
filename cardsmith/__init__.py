"""
Cardsmith - Character Card Format Interoperability Engine

Imports character cards from CCv2/CCv3 JSON, PNG, CHARX and Voxta packages,
normalizes them into one canonical model, and exports them back out to any
supported format.
"""

__version__ = "0.1.0"
