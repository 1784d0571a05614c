"""Agent internals -- the orchestration layer of toolhost.

Module Overview
---------------

**app.py**
    The App orchestrator: single-flight step execution, the FIFO prompt
    queue, cancellation and the tool-approval handshake.

**step_runner.py**
    One generation step against an OpenAI-compatible chat API, including
    the tool-call loop.

**events.py**
    Structured events published by the App, and the EventBus that delivers
    them in order to subscribers.

**context.py**
    Cancellable scopes (root context, per-step children, deadlines).

**message_store.py** / **session_persister.py**
    Conversation history and its JSON session file.

**model_metadata.py**
    Advisory model capabilities used to clamp request parameters.

**compaction.py**
    Summarizes older turns once the history nears the context window
    (automatically before a step, or on /compact).

**extensions.py**
    Static extension hooks (prompt submit, tool call/result, stop).

Architecture
------------
No module here imports from ``toolhost_cli``; the CLI wires providers,
config and presentation into the App from the outside.
"""
