"""PR Agent - remote task orchestration.

Delegates a multi-task plan to a remote coding agent, follows its event stream
and turns the result into a single pull request.
"""

__version__ = "0.1.0"
