"""Terminal output for pipeline runs.

Modules
-------
renderer
    ``RunRenderer`` turns ``PipelineRun`` reports and trigger decisions
    into Rich renderables.
"""
