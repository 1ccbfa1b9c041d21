"""Transcoding module.

HLS rendition encoding with ffmpeg and master playlist assembly.
"""
