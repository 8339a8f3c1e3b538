from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import httpx

from hatchway.core.config_manager import ConfigManager, HatchwayConfig
from hatchway.core.logging_manager import LoggingManager
from hatchway.core.store import ConfigStore, JsonFileConfigStore, MemoryConfigStore
from hatchway.remote.github import GitHubAPI
from hatchway.remote.policy import RateLimiter, RetryPolicy
from hatchway.security.cache import TokenCache
from hatchway.security.cipher import SecretCipher
from hatchway.security.credentials import CredentialStore
from hatchway.security.tokens import TokenBroker
from hatchway.security.webhooks import WebhookHandler, WebhookResult
from hatchway.updates.backups import BackupInfo, BackupManager
from hatchway.updates.host import LocalPackageHost, ManagedPackage, PackageHost, PackageType
from hatchway.updates.installer import PACKAGES_CACHE_KEY, InstallResult, PackageInstaller
from hatchway.updates.pipeline import InstallOutcome, UpdateCandidate, UpdatePipeline
from hatchway.updates.releases import Channel, ReleaseResolver
from hatchway.updates.resolver import RepositoryResolver
from hatchway.utils.exceptions import ApplicationError, CredentialError, HatchwayError, NotFoundError

STATUS_NOT_CONFIGURED = "not_configured"
STATUS_APP_CREATED = "app_created"
STATUS_INSTALLED = "installed"
STATUS_CONNECTION_ERROR = "connection_error"

CONNECTION_ERROR_MESSAGE = "Could not connect to GitHub. Check the logs for details."


class ApplicationCore:
    """Builds the component graph and exposes the operations callers use.

    Components are constructed once in :meth:`initialize` and passed to
    each other explicitly. The store, package host and HTTP transport can be
    supplied by the embedding application; otherwise they are built from
    configuration.
    """

    def __init__(
            self,
            config_path: Optional[Union[str, Path]] = None,
            store: Optional[ConfigStore] = None,
            host: Optional[PackageHost] = None,
            transport: Optional[httpx.BaseTransport] = None,
            clock: Callable[[], float] = time.time
    ) -> None:
        """Initialize the application core.

        Args:
            config_path: Optional path to a YAML or JSON configuration file
            store: Key-value store to use instead of the configured one
            host: Package host to use instead of the local directories
            transport: HTTP transport for the GitHub client
            clock: Time source shared by caches and token handling
        """
        self._config_path = config_path
        self._store = store
        self._host = host
        self._transport = transport
        self._clock = clock
        self._initialized = False
        self._logger: Optional[Any] = None

        self.config_manager: Optional[ConfigManager] = None
        self.logging_manager: Optional[LoggingManager] = None
        self.api: Optional[GitHubAPI] = None
        self.credentials: Optional[CredentialStore] = None
        self.broker: Optional[TokenBroker] = None
        self.repositories: Optional[RepositoryResolver] = None
        self.releases: Optional[ReleaseResolver] = None
        self.backups: Optional[BackupManager] = None
        self.installer: Optional[PackageInstaller] = None
        self.pipeline: Optional[UpdatePipeline] = None
        self.webhooks: Optional[WebhookHandler] = None

    def initialize(self) -> None:
        """Load configuration and wire every component.

        Raises:
            ApplicationError: If configuration is invalid or a component
                cannot be built
        """
        try:
            self.config_manager = ConfigManager(config_path=self._config_path)
            self.config_manager.initialize()

            self.logging_manager = LoggingManager(self.config_manager)
            self.logging_manager.initialize()
            self._logger = self.logging_manager.get_logger("hatchway.app")

            self._build_components(self.config_manager.settings)
            self._initialized = True
            self._logger.info("Hatchway initialization complete")
        except HatchwayError as e:
            if self._logger:
                self._logger.error(f"Failed to initialize Hatchway: {str(e)}", exc_info=True)
            raise ApplicationError(f"Failed to initialize application: {str(e)}") from e

    def _build_store(self, settings: HatchwayConfig) -> ConfigStore:
        if self._store is not None:
            return self._store
        if settings.store.type == "memory":
            return MemoryConfigStore(clock=self._clock)
        return JsonFileConfigStore(settings.store.path, clock=self._clock)

    def _build_components(self, settings: HatchwayConfig) -> None:
        get_logger = self.logging_manager.get_logger
        store = self._build_store(settings)
        self._store = store

        cipher = SecretCipher(settings.security.encryption_key)
        token_cache = TokenCache(store, safety_margin=settings.cache.token_safety_margin, clock=self._clock)
        self.credentials = CredentialStore(
            store, cipher, token_cache, logger=get_logger("hatchway.credentials")
        )

        api_logger = get_logger("hatchway.github")
        retry = settings.retry
        self.api = GitHubAPI(
            base_url=settings.github.api_url,
            timeout=settings.github.timeout,
            download_timeout=settings.github.download_timeout,
            user_agent=settings.github.user_agent,
            rate_limiter=RateLimiter(
                low_water_mark=retry.low_water_mark,
                max_wait=retry.max_rate_limit_wait,
                clock=self._clock,
                logger=api_logger,
            ),
            retry_policy=RetryPolicy(
                max_attempts=retry.max_attempts,
                initial_delay=retry.initial_delay,
                max_delay=retry.max_delay,
                logger=api_logger,
            ),
            transport=self._transport,
            logger=api_logger,
        )

        self.broker = TokenBroker(
            self.credentials,
            token_cache,
            self.api,
            clock=self._clock,
            jwt_lifetime=settings.security.jwt_lifetime_seconds,
            logger=get_logger("hatchway.tokens"),
        )
        self.repositories = RepositoryResolver(
            self.credentials,
            ttl=settings.cache.repository_index_ttl,
            clock=self._clock,
            logger=get_logger("hatchway.repositories"),
        )
        self.releases = ReleaseResolver(
            self.broker,
            store,
            ttl=settings.cache.release_ttl,
            logger=get_logger("hatchway.releases"),
        )

        packages = settings.packages
        self.backups = BackupManager(packages.backup_dir, logger=get_logger("hatchway.backups"))
        host = self._host or LocalPackageHost(
            packages.plugins_dir,
            packages.themes_dir,
            backups=self.backups if packages.backups_enabled else None,
            logger=get_logger("hatchway.host"),
        )
        self._host = host

        self.installer = PackageInstaller(
            host,
            self.broker,
            store,
            temp_dir=packages.temp_dir or None,
            logger=get_logger("hatchway.installer"),
        )
        self.pipeline = UpdatePipeline(
            host,
            self.repositories,
            self.releases,
            self.installer,
            store,
            logger=get_logger("hatchway.pipeline"),
        )
        self.webhooks = WebhookHandler(
            self.credentials,
            on_release=self._on_release_published,
            logger=get_logger("hatchway.webhooks"),
        )

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ApplicationError("Application core not initialized")

    def _on_release_published(self, repository: str) -> None:
        self.releases.invalidate(repository)
        self._store.delete(PACKAGES_CACHE_KEY)

    def store_credentials(self, partial: Mapping[str, Any]) -> Dict[str, Any]:
        """Create or update a credential record.

        Plaintext ``private_key`` and ``webhook_secret`` values are
        encrypted before storage and never returned.

        Returns:
            The sanitized record
        """
        self._require_initialized()
        record = self.credentials.save(partial)
        return CredentialStore.sanitize(record)

    def delete_credentials(self, credential_id: str) -> bool:
        self._require_initialized()
        return self.credentials.delete(credential_id)

    def list_credentials(self) -> List[Dict[str, Any]]:
        self._require_initialized()
        return [CredentialStore.sanitize(record) for record in self.credentials.all()]

    def get_connection_status(self, credential_id: Optional[str] = None) -> Dict[str, Any]:
        """Report how far a credential is from a working connection.

        Never raises. The status is one of ``not_configured``,
        ``app_created``, ``installed`` or ``connection_error``; provider
        error text is logged, not returned.
        """
        try:
            return self._connection_status(credential_id)
        except Exception as e:
            if self._logger:
                self._logger.error(f"Connection status check failed: {str(e)}", exc_info=True)
            return {
                "status": STATUS_CONNECTION_ERROR,
                "message": CONNECTION_ERROR_MESSAGE,
                "details": {"credential_id": credential_id},
            }

    def _connection_status(self, credential_id: Optional[str]) -> Dict[str, Any]:
        self._require_initialized()

        credential_id = credential_id or self.credentials.resolve_default()
        unlocked = self.credentials.find(credential_id) if credential_id else None
        if unlocked is None:
            return {
                "status": STATUS_NOT_CONFIGURED,
                "message": "No GitHub App credentials are stored.",
                "details": {},
            }

        record = unlocked.record
        details: Dict[str, Any] = {
            "credential_id": record.id,
            "name": record.name,
            "install_url": record.install_url,
        }

        if unlocked.repaired or not unlocked.usable:
            details["repaired"] = unlocked.repaired
            return {
                "status": STATUS_NOT_CONFIGURED,
                "message": "The GitHub App private key or app id is missing.",
                "details": details,
            }

        if not record.installation_id:
            return {
                "status": STATUS_APP_CREATED,
                "message": "The GitHub App exists but has not been installed yet.",
                "details": details,
            }

        details["installation_id"] = record.installation_id
        with self.broker.get_client(record.id) as client:
            response = client.get("/installation/repositories", params={"per_page": 1})
        if not response.is_success:
            raise ApplicationError(
                f"Installation check returned {response.status_code}: {response.text[:500]}"
            )

        details["repository_count"] = response.json().get("total_count", 0)
        details["managed_repositories"] = list(record.managed_repositories)
        details["rate_limit_remaining"] = self.api.rate_limiter.remaining
        return {
            "status": STATUS_INSTALLED,
            "message": "Connected to GitHub.",
            "details": details,
        }

    def list_packages(self, force: bool = False) -> List[ManagedPackage]:
        self._require_initialized()
        return self.pipeline.discover_packages(force=force)

    def check_for_updates(self) -> List[UpdateCandidate]:
        self._require_initialized()
        return self.pipeline.check_for_updates()

    def install_version(self, repository: str, version: str) -> InstallOutcome:
        self._require_initialized()
        return self.pipeline.install_version(repository, version)

    def rollback(self, repository: str, target_version: Optional[str] = None) -> InstallOutcome:
        self._require_initialized()
        return self.pipeline.rollback(repository, target_version)

    def list_managed_repositories(self, credential_id: Optional[str] = None) -> List[str]:
        self._require_initialized()
        return self.repositories.list_managed_repositories(credential_id)

    def sync_repositories(self, credential_id: Optional[str] = None) -> List[str]:
        """Refresh a credential's managed repositories from its GitHub installation.

        Raises:
            CredentialError: If no credential is given and none is usable
            AuthError: If no installation token is available
            NetworkError: If GitHub could not be reached
        """
        self._require_initialized()
        credential_id = credential_id or self.credentials.resolve_default()
        if not credential_id:
            raise CredentialError("No usable GitHub App credentials are stored", reason="missing")

        with self.broker.get_client(credential_id) as client:
            repositories = self.repositories.sync_repositories(client)
        self._store.delete(PACKAGES_CACHE_KEY)
        return repositories

    def set_channel(self, repository: str, channel: str) -> Channel:
        self._require_initialized()
        self._store.delete(PACKAGES_CACHE_KEY)
        return self.releases.set_channel(repository, channel)

    def handle_webhook(
            self,
            event: str,
            body: Union[bytes, str],
            signature: Optional[str]
    ) -> WebhookResult:
        """Verify and apply a webhook delivery.

        Raises:
            AuthError: If the signature matches no stored secret
            ApplicationError: If the body is not a JSON object
        """
        self._require_initialized()
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ApplicationError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ApplicationError("Webhook body is not a JSON object")
        return self.webhooks.handle(event, payload, body, signature)

    def list_backups(self, slug: Optional[str] = None) -> List[BackupInfo]:
        self._require_initialized()
        return self.backups.list_backups(slug)

    def restore_backup(self, name: str, package_type: Optional[str] = None) -> InstallResult:
        """Reinstall a package from one of its backups.

        Raises:
            NotFoundError: If there is no backup called ``name``
        """
        self._require_initialized()
        info = self.backups.get_backup(name)
        if info is None:
            raise NotFoundError(f"No backup named {name}", resource=name)
        return self.installer.restore(
            info.path, info.slug, PackageType(package_type) if package_type else None
        )

    def shutdown(self) -> None:
        """Cancel pending waits and release resources."""
        if self.api is not None:
            self.api.cancel()
            self.api.close()
        if self.logging_manager is not None:
            self.logging_manager.shutdown()
        if self.config_manager is not None:
            self.config_manager.shutdown()
        self._initialized = False

    def is_initialized(self) -> bool:
        return self._initialized

    def status(self) -> Dict[str, Any]:
        """Get the application status.

        Returns:
            Status dictionary
        """
        from hatchway.__version__ import __version__

        status: Dict[str, Any] = {
            "name": "ApplicationCore",
            "initialized": self._initialized,
            "version": __version__,
            "managers": {},
        }
        for manager in (self.config_manager, self.logging_manager):
            if manager is not None:
                status["managers"][manager.name] = manager.status()
        if self.repositories is not None and self._initialized:
            status["repository_conflicts"] = self.repositories.conflicts()
        return status
