"""flowmachine - pipeline execution engine.

Pipelines are reusable templates of ordered steps (fetch, ai, publish,
update). Flows bind each step to a concrete handler and a schedule. Jobs are
single executions of a flow, advanced one step at a time through a durable
queue.
"""

__version__ = "0.1.0"
