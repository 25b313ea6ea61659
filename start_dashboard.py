#!/usr/bin/env python3
"""
HubSync Dashboard Launcher
Start the HubSpot CMS bulk editing API
"""

import os
import sys
from pathlib import Path

# Add current directory to path
sys.path.insert(0, str(Path(__file__).parent))

def main():
    """Launch the dashboard API"""
    port = int(os.environ.get("PORT", 8080))
    print("HubSync Dashboard Launcher")
    print("=" * 40)

    try:
        import uvicorn

        print(f"Access at: http://localhost:{port}")
        print(f"API Docs: http://localhost:{port}/docs")
        print()
        print("Press Ctrl+C to stop the server")
        print("-" * 40)

        uvicorn.run("app:app", host="0.0.0.0", port=port, reload=True)

    except KeyboardInterrupt:
        print("\nDashboard stopped by user")
    except ImportError as e:
        print(f"Error starting dashboard: {e}")
        print("\nTroubleshooting:")
        print("1. Make sure you're in the correct directory")
        print("2. Install dependencies: pip install -e .")
        print(f"3. Check if port {port} is available")
        return 1

    return 0

if __name__ == "__main__":
    exit(main())
