"""
Command-line application: request collection and search orchestration.
"""
