"""Observability package: error categorization and the run error ledger."""

from screener.observability.errors import ErrorCategory, ErrorLedger, categorize

__all__ = ["ErrorCategory", "ErrorLedger", "categorize"]
