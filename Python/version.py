# version.py
# Single source of truth for version strings
# Import this everywhere instead of hardcoding versions

QUESTLINE_VERSION = "1.0.0"
ASSESSMENT_FORMAT_VERSION = "1.0"

# Build identifier (can be overwritten by CI/CD)
BUILD_ID = "QUESTLINE-local"

def get_version_string() -> str:
    """Returns a formatted version string for logging/display"""
    return f"Questline Turn Engine v{QUESTLINE_VERSION} (assessment format v{ASSESSMENT_FORMAT_VERSION})"
