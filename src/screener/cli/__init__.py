"""CLI package for the stock screener."""
