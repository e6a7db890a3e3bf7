"""Dose grace-period, missed-dose detection and dose event engine.

This package contains the rules and workflows that decide whether a scheduled
medication dose is on time, late or missed, and that record take, undo,
correction, skip and snooze actions. Storage and delivery live behind
protocols so the logic can be tested without infrastructure.
"""
