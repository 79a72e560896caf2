"""
Audit trail for tool activity.
Keeps the most recent tool executions, approval decisions and requests for
tools that are not in the catalogue, so a front-end can show what the agent
actually did during a session.
"""

from collections import deque
from datetime import datetime
from typing import Dict, Any, Optional
import threading

# Shared across runs; every access goes through the lock
_lock = threading.Lock()
_executions = deque(maxlen=50)
_approvals = deque(maxlen=50)
_unknown_tools = deque(maxlen=100)


def record_tool_execution(tool_name: str, arguments: Dict[str, Any], result: str, success: bool = True):
    """Record one tool execution."""
    with _lock:
        _executions.append({
            "tool_name": tool_name,
            "arguments": dict(arguments),
            "result": result,
            "success": success,
            "timestamp": datetime.now().isoformat()
        })


def record_approval(request_id: str, tool_name: str, approved: bool):
    """Record the human decision for one invocation request."""
    with _lock:
        _approvals.append({
            "request_id": request_id,
            "tool_name": tool_name,
            "approved": approved,
            "timestamp": datetime.now().isoformat()
        })


def log_unknown_tool_request(tool_name: str, arguments: Dict[str, Any]):
    """Remember a call to a tool the registry does not know."""
    with _lock:
        _unknown_tools.append({
            "tool_name": tool_name,
            "arguments": dict(arguments),
            "timestamp": datetime.now().isoformat()
        })


def get_tool_history(limit: int = 10) -> list:
    """Most recent executions, oldest first."""
    with _lock:
        return list(_executions)[-limit:]


def get_approval_history(limit: int = 10) -> list:
    with _lock:
        return list(_approvals)[-limit:]


def get_unknown_tool_requests(limit: int = 20) -> list:
    with _lock:
        return list(_unknown_tools)[-limit:]


def get_last_tool_output(tool_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Last execution of `tool_name`, or of any tool when no name is given."""
    with _lock:
        for execution in reversed(_executions):
            if tool_name is None or execution["tool_name"] == tool_name:
                return dict(execution)
        return None


def clear_history():
    """Forget everything (used when a conversation is cleared and by tests)."""
    with _lock:
        _executions.clear()
        _approvals.clear()
        _unknown_tools.clear()
