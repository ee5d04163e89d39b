"""SubBuddy metrics core.

Polls the subscription-analytics API (and optionally the attribution and
text-generation APIs), normalizes the responses into dashboard snapshots,
aggregates them across projects and produces AI-written period reports.
"""

__version__ = "1.3.0"
