"""
Vigil - in-process integration-health monitoring and test harness.

Observes a live application's diagnostic output and UI mutations,
correlates them into workflow traces, and writes health reports.
"""

__version__ = "0.1.0"
