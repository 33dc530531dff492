"""
Run the backend as a module: python -m muzzle_backend
"""
import uvicorn

from muzzle_backend.main import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
