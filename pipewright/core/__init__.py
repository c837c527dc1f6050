"""Pipeline engine: trigger filtering, graph, scheduling, execution, GitOps."""
