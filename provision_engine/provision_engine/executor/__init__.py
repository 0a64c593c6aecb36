"""Step execution: external commands, step factories and the pipeline state machine."""

from __future__ import annotations

from provision_engine.executor.command import CommandRunner, run_command
from provision_engine.executor.pipeline import CancellationToken, PipelineExecutor
from provision_engine.executor.steps import command_step, file_step

__all__ = [
    "CancellationToken",
    "CommandRunner",
    "PipelineExecutor",
    "command_step",
    "file_step",
    "run_command",
]
