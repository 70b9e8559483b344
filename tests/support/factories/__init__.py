# Data factories for test data generation

from tests.support.factories.job_factory import (
    add_job,
    create_job,
    generation_request,
    load,
    reference_image,
)

__all__ = [
    "add_job",
    "create_job",
    "generation_request",
    "load",
    "reference_image",
]
