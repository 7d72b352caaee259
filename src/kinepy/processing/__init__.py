"""This is the stream processing submodule.

This module contains the per-device sample buffer, the activity classifier and
the annotation session that turns classifier output and user corrections into
training data, and helpers that summarize and augment that data.
"""
