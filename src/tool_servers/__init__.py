"""
Tool servers bundled with the gateway.

Each module runs as its own process and speaks line-delimited JSON-RPC 2.0
on stdin/stdout (see :mod:`src.tool_servers.server`).

Delivery guarantees for tool authors: a request still waiting in the
gateway's queue when a server crashes is sent again to the restarted
process, but a request that was already written to the crashed process is
never re-sent; its caller gets ``ProcessExited``. A tool may therefore see a
call at most once, and side-effecting tools should make retries by the
sandbox safe on their own.
"""
