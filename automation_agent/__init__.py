"""
automation_agent — AgentForge Claims Automation Engine
------------------------------------------------------
Trigger detection, the trigger → action table, executors and the LangGraph
engine that ties them together.
"""
