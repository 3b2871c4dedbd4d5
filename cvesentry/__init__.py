"""CVE Sentry: vulnerability ingestion, enrichment and change notification.

This package pulls vulnerability records from an external feed, stores
them in a relational model, discovers proof-of-concept and affected
project evidence on a code-hosting search source, and notifies
subscribers once per material change.
"""

__version__ = "0.3.0"
