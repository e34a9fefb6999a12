"""Vital-sign anomaly detection and emergency escalation.

This package contains the domain models and the monitoring engine,
with every external integration injected through small protocols.
"""
