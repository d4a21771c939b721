"""
Microsoft Sentinel deployment tooling.

Contains the command line entry point, settings and shared decorators used by
the Azure deployment modules.
"""
