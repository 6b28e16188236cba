"""Recorder frame information and shared control records."""