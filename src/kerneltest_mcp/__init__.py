"""
Kerneltest MCP - run kernel tracing workload tests against installed kernels.

This package resolves installed kernels, prepares native or
cross-architecture guest root filesystems, boots them with virtme-ng and
runs the tracing workload and its e2e test phases inside the guest. It is
usable as an MCP server or from the command line.
"""

__version__ = "0.1.0"
