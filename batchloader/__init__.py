"""
Batch Loader - unattended bulk loading of delimited files.

Loads every eligible file from a local directory or a GCS prefix into the
analytical store through an external bulk-load command, running configured
per-table hooks once per run, and mails an auditable summary.

Usage:
    batchloader --config /etc/batchloader/prod.yaml
    python -m batchloader.main --config prod.yaml

Environment Variables:
    BATCHLOADER_<KEY>: Override a top-level scalar setting of the config file
"""

__version__ = "0.1.0"
