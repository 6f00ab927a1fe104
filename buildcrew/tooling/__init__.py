"""
BUILDCREW Tooling

Schema-validated, metered access to files, shell, scanners and
model-backed lookups.
"""

from buildcrew.tooling.registry import ToolMetrics, ToolRegistry, validate_arguments
from buildcrew.tooling.tools import (
    BuiltinTool,
    ExternalTool,
    ModelTool,
    Tool,
    ToolContext,
    run_command,
    scan_text_for_secrets,
)

__all__ = [
    "BuiltinTool",
    "ExternalTool",
    "ModelTool",
    "Tool",
    "ToolContext",
    "ToolMetrics",
    "ToolRegistry",
    "run_command",
    "scan_text_for_secrets",
    "validate_arguments",
]
