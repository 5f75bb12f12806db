"""
External provider integrations.

The analysis provider (Bedrock AgentCore) is reached only through this
package so the domain layer can run without it.
"""
