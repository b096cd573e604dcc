"""Tool manifests, the subprocess runner, the concurrent dispatcher and the
read-only built-in tools used by the pre-stage call.
"""

from agentrun.toolkit.builtins import builtin_tool_messages, run_builtin_tool
from agentrun.toolkit.executor import ToolDispatcher, sanitize_tool_content
from agentrun.toolkit.manifest import check_availability, load_manifest
from agentrun.toolkit.models import ToolResult, ToolSpec
from agentrun.toolkit.runner import SubprocessToolRunner

__all__ = [
    "ToolSpec",
    "ToolResult",
    "ToolDispatcher",
    "SubprocessToolRunner",
    "load_manifest",
    "check_availability",
    "sanitize_tool_content",
    "run_builtin_tool",
    "builtin_tool_messages",
]
