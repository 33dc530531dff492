"""
Run the server with auto-reload for local development.
"""
import uvicorn

if __name__ == "__main__":
    uvicorn.run("muzzle_backend.main:app", host="0.0.0.0", port=8000, reload=True)
