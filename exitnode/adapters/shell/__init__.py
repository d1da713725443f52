"""Shell command adapter."""

from exitnode.adapters.shell.command import ShellCommandAdapter

__all__ = ["ShellCommandAdapter"]
