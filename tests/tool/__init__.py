"""Test helpers for the node-agent tool."""

from node_agent.command import Command, CommandResult

NODE_AGENT_BIN = "node-agent"


async def run_command(args: list[str]) -> CommandResult:
    return await Command([NODE_AGENT_BIN] + args).run()
