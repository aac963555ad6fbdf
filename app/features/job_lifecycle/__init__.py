"""
Job lifecycle feature package.

This vertical slice keeps every layer of the marketplace job flow co-located
(domain models, repositories, services, real-time layer and API routers) so
contributors can follow a job from service request to review without hunting
through global folders.
"""
