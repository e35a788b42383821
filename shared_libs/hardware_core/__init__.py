"""Hardware-facing core shared by the build tooling and the flow engine.

Modules:
- errors: Exception hierarchy for validation, compilation, allocation and I/O
- catalog: Immutable snapshot of command schemas and device templates
- topology: Port/channel occupancy (the only writer) and binding resolution
- compiler: Device + template -> concrete controller command(s)
"""

__all__ = [
	"errors",
	"catalog",
	"topology",
	"compiler",
]
