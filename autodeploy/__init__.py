"""
Autodeploy - continuous deployment by polling a git branch.

Watches the tip commit of the current branch on the hosting service and,
whenever it moves, tears down the running deployment process tree, pulls
the new code and starts the deploy command again.
"""

__version__ = "0.1.0"
