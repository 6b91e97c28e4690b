"""Core domain logic for patient monitoring sessions.

This package contains the session lifecycle, realtime change handling and
risk scoring, isolated from any concrete data store for easy testing.
"""
