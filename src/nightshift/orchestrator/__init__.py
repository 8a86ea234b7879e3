"""Task queue orchestration for local CLI coding agents.

A single process owns the scheduler: it claims queued tasks in queue order,
spawns the configured agent inside the project's directory, supervises its
output, and moves the task to review when the agent exits. Durable state
lives in SQLite, so CLI commands issued from other shells (reorder, cancel,
reprompt) are picked up by the running worker on its next poll.

Usage and rate limits are treated as a property of the agent, not of the
task: a limited run is requeued untouched and the whole agent is blocked
until its reset time passes.
"""
