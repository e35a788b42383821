"""Flow graph compilation shared by the build tooling and the engine.

Modules:
- variables: {{id}} reference parsing
- graph: Flow validation and the index-based ExecutionGraph
"""

__all__ = [
	"variables",
	"graph",
]
