"""Execution pipeline for deploy / destroy actions.

- **sequence**: Default vs custom command sequences (selected once per action)
- **resolver**: Workspace definition -> materialized working directory
- **workdir**: Copy helpers that preserve the provisioning tool's state
- **executor**: Runs one provisioning step as a subprocess
"""
