"""Pipeline modules.

- job: job envelope, wire codec, producer and submission API
- queue: durable subject-addressed queue, consumer groups, dead-letter policy
- transcoding: ffmpeg HLS engine adapter and master manifest assembly
- worker: consumer pool and per-delivery state machine
"""
