"""Entry point for running the pipeline operations API."""
import os

import uvicorn

if __name__ == "__main__":
    from pipeline.app import app
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PIPELINE_PORT", "8001")))
