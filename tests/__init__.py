"""
Test suite for the zstage_control package.

This directory contains automated unit tests that run without hardware:
the real adapter is exercised against fake Micro-Manager objects and every
other component against the simulated or fake adapters in conftest.py.
"""
