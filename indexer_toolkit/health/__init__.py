"""
Health module - readiness probes

Provides the polymorphic HealthProbe interface and its HTTP, TCP,
exit-code, running and exec variants.
"""

from indexer_toolkit.health.probes import (
    ExecProbe,
    ExitCodeProbe,
    HealthProbe,
    HttpProbe,
    ProbeAborted,
    ProbeResult,
    RunningProbe,
    TcpProbe,
    build_probe,
)

__all__ = [
    "HealthProbe",
    "HttpProbe",
    "TcpProbe",
    "ExitCodeProbe",
    "RunningProbe",
    "ExecProbe",
    "ProbeAborted",
    "ProbeResult",
    "build_probe",
]
