"""
Enrollment script rendering.

Scripts embed the API URL, the classroom and the enrollment ticket as
single-quoted literals; every embedded value is escaped for the target
shell so that no catalog value can break out of its quotes.
"""

from __future__ import annotations

from dataclasses import dataclass
from string import Template


POWERSHELL_MEDIA_TYPE = "text/x-powershell"
SHELL_MEDIA_TYPE = "text/x-shellscript"


@dataclass(frozen=True)
class EnrollmentScriptContext:
    """Values embedded into an enrollment script."""

    api_url: str
    classroom_id: str
    classroom_name: str
    enrollment_token: str


def powershell_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + value.replace("'", "''") + "'"


def bash_quote(value: str) -> str:
    """Quote a value as a bash single-quoted string literal."""
    return "'" + value.replace("'", "'\\''") + "'"


# ============================================================================
# Windows (PowerShell)
# ============================================================================

_POWERSHELL_TEMPLATE = Template(r"""#Requires -RunAsAdministrator
$$ErrorActionPreference = 'Stop'

$$ApiUrl = $api_url
$$ClassroomId = $classroom_id
$$ClassroomName = $classroom_name
$$EnrollmentToken = $enrollment_token

Write-Host ''
Write-Host '==============================================='
Write-Host " ClassGate enrollment: $$ClassroomName"
Write-Host '==============================================='

$$Headers = @{ Authorization = "Bearer $$EnrollmentToken" }
$$Staging = Join-Path $$env:TEMP ("classgate-" + [guid]::NewGuid().ToString('N'))
New-Item -ItemType Directory -Path $$Staging -Force | Out-Null

try {
    # Step 1: Download and verify the bootstrap installer
    Write-Host '[1/3] Downloading installer...'
    $$Manifest = Invoke-RestMethod -Uri "$$ApiUrl/api/agent/windows/bootstrap/latest.json" -Headers $$Headers
    foreach ($$File in $$Manifest.files) {
        $$Target = Join-Path $$Staging ($$File.path -replace '/', '\')
        New-Item -ItemType Directory -Path (Split-Path $$Target -Parent) -Force | Out-Null
        $$Encoded = [uri]::EscapeDataString($$File.path)
        Invoke-WebRequest -Uri "$$ApiUrl/api/agent/windows/bootstrap/file?path=$$Encoded" -Headers $$Headers -OutFile $$Target -UseBasicParsing
        $$Actual = (Get-FileHash -Path $$Target -Algorithm SHA256).Hash.ToLowerInvariant()
        if ($$Actual -ne $$File.sha256) {
            throw "Hash mismatch for $$($$File.path)"
        }
    }
    Write-Host "  OK: version $$($$Manifest.version)"

    # Step 2: Install and register in the classroom
    Write-Host '[2/3] Installing and enrolling...'
    & (Join-Path $$Staging 'Install-ClassGate.ps1') -ApiUrl $$ApiUrl -Unattended
    & (Join-Path $$Staging 'scripts\Enroll-Device.ps1') -ApiUrl $$ApiUrl -ClassroomId $$ClassroomId -EnrollmentToken $$EnrollmentToken

    # Step 3: Verify
    Write-Host '[3/3] Verifying...'
    $$HealthScript = Join-Path $$env:ProgramData 'ClassGate\scripts\Test-DNSHealth.ps1'
    if (Test-Path $$HealthScript) { & $$HealthScript }
}
finally {
    Remove-Item -Path $$Staging -Recurse -Force -ErrorAction SilentlyContinue
}

Write-Host ''
Write-Host "OK - device ready in classroom: $$ClassroomName"
""")


# ============================================================================
# Linux (bash)
# ============================================================================

_BASH_TEMPLATE = Template(r"""#!/bin/bash
set -euo pipefail

API_URL=$api_url
CLASSROOM_ID=$classroom_id
CLASSROOM_NAME=$classroom_name
ENROLLMENT_TOKEN=$enrollment_token

echo ''
echo '==============================================='
echo ' ClassGate enrollment: '"$$CLASSROOM_NAME"
echo '==============================================='

if [ "$$(id -u)" -ne 0 ]; then
    echo "ERROR: Run with sudo"
    exit 1
fi

echo "[1/3] Installing package..."
if ! command -v classgate-agent &>/dev/null; then
    export DEBIAN_FRONTEND=noninteractive
    apt-get update -qq
    apt-get install -y classgate-agent
else
    echo "  OK: already installed"
fi

echo "[2/3] Enrolling in classroom..."
classgate-agent enroll --classroom-id "$$CLASSROOM_ID" --api-url "$$API_URL" --enrollment-token "$$ENROLLMENT_TOKEN"

echo "[3/3] Verifying..."
classgate-agent health || true

echo ""
echo "OK - device ready in classroom: $$CLASSROOM_NAME"
""")


def render_windows_script(context: EnrollmentScriptContext) -> str:
    """
    Render the Windows enrollment script.

    Args:
        context: Values to embed

    Returns:
        PowerShell script text
    """
    return _POWERSHELL_TEMPLATE.substitute(
        api_url=powershell_quote(context.api_url),
        classroom_id=powershell_quote(context.classroom_id),
        classroom_name=powershell_quote(context.classroom_name),
        enrollment_token=powershell_quote(context.enrollment_token),
    )


def render_linux_script(context: EnrollmentScriptContext) -> str:
    """
    Render the Linux enrollment script.

    Args:
        context: Values to embed

    Returns:
        bash script text
    """
    return _BASH_TEMPLATE.substitute(
        api_url=bash_quote(context.api_url),
        classroom_id=bash_quote(context.classroom_id),
        classroom_name=bash_quote(context.classroom_name),
        enrollment_token=bash_quote(context.enrollment_token),
    )
