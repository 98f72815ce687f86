"""
Harness Module

Configuration, orchestration and CLI around the sandbox and audit packages.

This module provides:
- YAML-based configuration loading
- Master key resolution (environment variable or key file)
- A secure runner that audits every sandboxed execution
- Failure classification for executions
- CLI for running, checking and auditing commands
"""

__version__ = "0.1.0"
