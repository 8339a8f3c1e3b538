"""GitHub API access with retry and rate-limit handling."""

from hatchway.remote.github import GitHubAPI
from hatchway.remote.policy import RateLimiter, RetryPolicy
