"""
Run the Doctors service with uvicorn.

Example:
  python -m apps.doctors
"""
import uvicorn
import os


def main() -> None:
    reload = os.getenv("DOCTORS_RELOAD", "false").lower() == "true"
    host = os.getenv("DOCTORS_HOST", "0.0.0.0")
    port = int(os.getenv("DOCTORS_PORT", "8084"))
    uvicorn.run(
        "apps.doctors.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
