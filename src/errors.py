"""
Exceptions raised by the FST pipeline.

@Date: 2025-08-04

"""

class FstPipelineError(Exception):
    """Base class for every error the pipeline raises on purpose."""


class ConfigError(FstPipelineError, ValueError):
    """
    Invalid or missing job parameters, or a task index outside the chromosome list.

    Raised before any external tool runs, so no artifacts are left behind.
    """

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field


class WorkspaceError(FstPipelineError, OSError):
    """The output directory or a chromosome subdirectory could not be created."""


class ExternalToolError(FstPipelineError):
    """
    An external tool (angsd or realSFS) exited with a non-zero status.

    Parameters
    ----------
    step_name : str
        Pipeline step that failed (e.g. 'likelihoods_pop1')
    command_name : str
        Executable that was invoked
    exit_code : int
        Exit status reported by the process
    stderr : str
        Captured standard error of the tool
    """

    def __init__(self, step_name, command_name, exit_code, stderr=''):
        self.step_name = step_name
        self.command_name = command_name
        self.exit_code = exit_code
        self.stderr = stderr or ''
        super().__init__(f"Step '{step_name}' failed: {command_name} exited with code {exit_code}")

    def process_exit_status(self):
        """Exit status the hosting process should terminate with."""
        if self.exit_code < 0:
            return min(128 - self.exit_code, 255)
        if 0 < self.exit_code < 256:
            return self.exit_code
        return 1
