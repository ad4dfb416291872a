"""Execution engine: drives external CLI coding agents through task runs.

The engine never reasons about code itself.  Each supported tool is an
opaque process that takes a prompt and writes either line-delimited JSON
records or free text with literal markers; the bridge normalizes both into
one event stream, and the orchestrator turns run outcomes into task
lifecycle transitions.
"""
