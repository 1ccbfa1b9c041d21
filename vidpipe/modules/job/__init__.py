"""Job module.

Job envelope, wire codec, producer and the submission API.
"""
