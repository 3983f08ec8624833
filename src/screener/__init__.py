"""
Stock screener bulk import pipeline.

Imports the NYSE/NASDAQ common-stock universe from a market-data provider,
enriches every symbol with price and fundamental ratios under an adaptive
rate governor, and upserts the records into a document store.
"""

__version__ = "0.1.0"
