import uvicorn

from svg_rasterizer.core.config import settings


def main() -> None:
    uvicorn.run("svg_rasterizer.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
