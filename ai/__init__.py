"""
Reasoning Oracle Module

LLM clients, prompts and the reply parser.
The oracle only proposes; RiskEngine & ExecutionEngine remain the hard authority.
"""
