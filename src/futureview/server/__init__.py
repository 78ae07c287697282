"""futureview server components.

The layout separates application bootstrap (`server/app`), the render job
pipeline (`server/jobs`), the engine channel (`server/engine`), artifact files
(`server/artifacts`), pixel compositing (`server/compositing`), and viewer
change notification (`server/notify`).
"""

__all__ = []
