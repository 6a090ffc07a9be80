"""Errors raised across the broker boundary.

The consumer-side errors are how a handler tells the broker client what to
do with a delivery:

- ConsumerTransientError -> requeue (up to the attempt bound)
- ConsumerPermanentError -> dead-letter right away
"""

from __future__ import annotations


class BrokerError(Exception):
    """The broker rejected an operation, or the client is not open."""


class BrokerUnavailable(BrokerError):
    """No publish confirmation arrived before the timeout."""


class ConsumerTransientError(Exception):
    """Processing failed for a reason that may go away (e.g. storage hiccup)."""


class ConsumerPermanentError(Exception):
    """The message can never be processed (e.g. schema violation)."""
