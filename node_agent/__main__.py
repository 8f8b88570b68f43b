"""Run the node agent with `python -m node_agent`."""

from node_agent.tool.node_agent import main

main()
