from ._version import __version__
from .cancel import CancelToken
from .client import GitHubClient, RemoteEntry
from .config import Config, load_config
from .installer import Installer
from .linker import Linker
from .materializer import MaterializeStats, Materializer
from .registry import BundleRecord, LinkedProject, Registry
from .source import SourceRef, parse_source_ref
from .tidy import Tidier, TidyReport
from .updater import Updater, UpdateStats

__all__ = [
    "__version__",
    "BundleRecord",
    "CancelToken",
    "Config",
    "GitHubClient",
    "Installer",
    "LinkedProject",
    "Linker",
    "MaterializeStats",
    "Materializer",
    "Registry",
    "RemoteEntry",
    "SourceRef",
    "Tidier",
    "TidyReport",
    "UpdateStats",
    "Updater",
    "load_config",
    "parse_source_ref",
]
