"""CycleSafe Backend — uvicorn launcher

Serves the risk endpoint and the alert snapshot; the aggregator starts
polling on app startup (see routes.py).
"""

import logging

logging.basicConfig(level=logging.INFO)

from routes import app  # noqa: F401

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
