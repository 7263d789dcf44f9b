from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from tagstream.config import load_settings
from tagstream.tag_process import ProcessLauncher, ProcessStartError, launch_tag_listing
from tagstream.transcoder import CancellationScope, stream_tag_catalog

logger = logging.getLogger(__name__)

settings = load_settings()

app = FastAPI(title="Tag Catalog Stream API")


def get_tag_launcher() -> ProcessLauncher:
    return launch_tag_listing


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/tags")
async def list_tags(request: Request, launch: ProcessLauncher = Depends(get_tag_launcher)):
    """Stream every tag the metadata tool knows about as ``{"tags":[...]}``.

    The process is started before the response head is sent, so a startup
    failure still gets a proper error status. Later failures can only
    truncate the body.
    """

    try:
        process = await launch(settings.exiftool)
    except ProcessStartError as exc:
        logger.error("Tag listing unavailable: %s", exc)
        return PlainTextResponse(str(exc), status_code=500)

    stream = stream_tag_catalog(
        process,
        scope=CancellationScope(request.is_disconnected),
        read_size=settings.read_size,
    )
    # Runs even when the response is torn down before the body is iterated.
    return StreamingResponse(
        stream,
        media_type="application/json",
        background=BackgroundTask(stream.aclose),
    )


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Serving tag catalog on http://%s:%s/tags", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
