"""Worker module.

Worker pool, per-delivery state machine, completion notifications and the
``vidpipe-worker`` command.
"""
