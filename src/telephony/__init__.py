"""Telephony audio: G.711 codec math and pluggable transcoders.

The bridge only depends on ``telephony.transcoder.Transcoder``; the engine
behind it (numpy, ffmpeg subprocess) is chosen by configuration.
"""
