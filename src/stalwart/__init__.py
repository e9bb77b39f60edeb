"""
Stalwart: Resilient execution for source/transform/sink pipelines.

Decides, for every failed unit of work, whether and when to retry it, how
many times a malfunctioning node may be restarted, and when repeated failure
escalates to a fatal, pipeline-stopping condition.
"""

__version__ = "0.1.0"
