"""Pipeline entrypoints."""


def run_pipeline(*args, **kwargs):
    from dexpipe.pipeline.run import run_pipeline as _run_pipeline

    return _run_pipeline(*args, **kwargs)


def analyze(*args, **kwargs):
    from dexpipe.pipeline.run import analyze as _analyze

    return _analyze(*args, **kwargs)


__all__ = ["run_pipeline", "analyze"]
