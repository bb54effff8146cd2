"""Error kinds raised by the job engine and review protocol."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Every way a job or review can fail."""

    # Configuration
    MISSING_PROJECT_CONFIG = "MissingProjectConfig"
    DELIVERY_CONFIG_PARSE = "DeliveryConfigParse"
    CONFIG_PARSE = "ConfigParse"

    # Build cookbook resolution
    NO_VALID_BUILD_COOKBOOK = "NoValidBuildCookbook"
    MISSING_BUILD_COOKBOOK_NAME = "MissingBuildCookbookName"
    MISSING_BUILD_COOKBOOK_FIELD = "MissingBuildCookbookField"
    EXPECTED_JSON_STRING = "ExpectedJsonString"
    SUPERMARKET_FAILED = "SupermarketFailed"
    CHEF_SERVER_FAILED = "ChefServerFailed"
    TAR_FAILED = "TarFailed"
    MOVE_FAILED = "MoveFailed"
    COPY_FAILED = "CopyFailed"
    BERKS_FAILED = "BerksFailed"

    # Git and external processes
    GIT_FAILED = "GitFailed"
    FAILED_TO_EXECUTE = "FailedToExecute"
    BAD_GIT_OUTPUT_MATCH = "BadGitOutputMatch"
    NOT_ON_A_BRANCH = "NotOnABranch"
    CHEF_FAILED = "ChefFailed"
    CHOWN_FAILED = "ChownFailed"
    CHMOD_FAILED = "ChmodFailed"

    # Job level
    NO_HOMEDIR = "NoHomedir"
    BRANCH_NOT_FOUND_ON_DELIVERY_REMOTE = "BranchNotFoundOnDeliveryRemote"
    IO_ERROR = "IoError"


_DESCRIPTIONS: dict[ErrorKind, str] = {
    ErrorKind.MISSING_PROJECT_CONFIG: "Unable to find the .delivery/config.json file",
    ErrorKind.DELIVERY_CONFIG_PARSE: "Failed to parse the .delivery/config.json file",
    ErrorKind.CONFIG_PARSE: "Failed to parse a configuration document",
    ErrorKind.NO_VALID_BUILD_COOKBOOK: "No valid build_cookbook entry in .delivery/config.json",
    ErrorKind.MISSING_BUILD_COOKBOOK_NAME: "The build_cookbook entry is missing its 'name'",
    ErrorKind.MISSING_BUILD_COOKBOOK_FIELD: "The build_cookbook entry is missing a required field",
    ErrorKind.EXPECTED_JSON_STRING: "Expected a JSON string in the build_cookbook entry",
    ErrorKind.SUPERMARKET_FAILED: "Failed to download the build cookbook from Supermarket",
    ErrorKind.CHEF_SERVER_FAILED: "Failed to download the build cookbook from the Chef Server",
    ErrorKind.TAR_FAILED: "Failed to extract the build cookbook archive",
    ErrorKind.MOVE_FAILED: "Failed to move a directory into place",
    ErrorKind.COPY_FAILED: "Failed to copy a directory into place",
    ErrorKind.BERKS_FAILED: "Berkshelf vendoring failed",
    ErrorKind.GIT_FAILED: "Git command failed!",
    ErrorKind.FAILED_TO_EXECUTE: "Tried to fork a process, and failed",
    ErrorKind.BAD_GIT_OUTPUT_MATCH: "A line of git porcelain did not match!",
    ErrorKind.NOT_ON_A_BRANCH: "You must be on a branch",
    ErrorKind.CHEF_FAILED: "chef-client failed",
    ErrorKind.CHOWN_FAILED: "Failed to change ownership of the workspace",
    ErrorKind.CHMOD_FAILED: "Failed to change permissions of the workspace",
    ErrorKind.NO_HOMEDIR: "Cannot find a homedir",
    ErrorKind.BRANCH_NOT_FOUND_ON_DELIVERY_REMOTE: (
        "The target pipeline branch does not exist on the delivery remote"
    ),
    ErrorKind.IO_ERROR: "An I/O Error occurred",
}


class DeliveryError(RuntimeError):
    """Raised for any failure inside the job engine.

    ``kind`` identifies what failed; ``detail`` carries whatever context is
    available, including captured STDOUT/STDERR of external processes.
    """

    def __init__(self, kind: ErrorKind, detail: str | None = None) -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(self._render())

    @property
    def description(self) -> str:
        return _DESCRIPTIONS.get(self.kind, self.kind.value)

    def _render(self) -> str:
        if self.detail:
            return f"{self.description}: {self.detail}"
        return self.description

    def __repr__(self) -> str:
        return f"DeliveryError(kind={self.kind.value!r}, detail={self.detail!r})"
