import asyncio

import uvicorn

from src.app.presentation.main import app, internal_app, settings


async def serve() -> None:
    """Run the public and internal surfaces side by side in one process."""
    public = uvicorn.Server(
        uvicorn.Config(app, host=settings.HOST, port=settings.PUBLIC_PORT, log_config=None)
    )
    internal = uvicorn.Server(
        uvicorn.Config(
            internal_app,
            host=settings.INTERNAL_HOST,
            port=settings.INTERNAL_PORT,
            log_config=None,
            lifespan="off",
        )
    )
    await asyncio.gather(public.serve(), internal.serve())


if __name__ == "__main__":
    asyncio.run(serve())
