"""Release resolution, package installation and update orchestration."""

from hatchway.updates.backups import BackupManager
from hatchway.updates.host import LocalPackageHost, ManagedPackage, PackageHost, PackageType
from hatchway.updates.installer import InstallResult, InstallStage, PackageInstaller
from hatchway.updates.pipeline import InstallOutcome, UpdateCandidate, UpdatePipeline
from hatchway.updates.releases import Channel, ReleaseDescriptor, ReleaseResolver
from hatchway.updates.resolver import RepositoryResolver
from hatchway.updates.versions import VersionStatus, compare_versions, normalize_version
