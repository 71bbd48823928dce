import logging
import os

import uvicorn

logging.getLogger().handlers.clear()
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(message)s",
    datefmt="%H:%M:%S",
)

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logging.info("Starting DAQ control API on %s:%s", host, port)
    uvicorn.run("control_api.main:app", host=host, port=port, reload=os.getenv("APP_ENV") == "development")
