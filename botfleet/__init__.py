"""
BotFleet: supervises a fleet of agent worker processes.

The supervisor spawns one worker per configured profile, restarts crashed
workers under a rate limit and relays operator messages to running workers.
"""
