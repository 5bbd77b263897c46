"""
Utilities for the CDC change applier
"""

from .retry import retry, RetryConfig, call_with_retry, retry_on_sink_error
from .sql_builder import SQLBuilder, quote_identifier
from .logger import setup_logging, get_logger, bind_run_context, clear_run_context

__all__ = [
    'retry',
    'RetryConfig',
    'call_with_retry',
    'retry_on_sink_error',
    'SQLBuilder',
    'quote_identifier',
    'setup_logging',
    'get_logger',
    'bind_run_context',
    'clear_run_context'
]
