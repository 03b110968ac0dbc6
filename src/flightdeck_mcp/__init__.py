"""
Flightdeck MCP - MCP server for iOS TestFlight release pipelines.

This package provides a Model Context Protocol (MCP) server that manages
signing certificates and provisioning profiles, builds and archives iOS
applications, and uploads them to TestFlight through App Store Connect.
"""

__version__ = "0.1.0"
