from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, TypedDict

# Column kinds
TEXT = "text"
DATE = "date"


class SafeCreator(TypedDict, total=False):
    id: str
    name: str


class SafeRecord(TypedDict, total=False):
    safeUrlId: str
    safeName: str
    safeNumber: int
    description: Optional[str]
    location: Optional[str]
    creator: SafeCreator
    olacEnabled: bool
    managingCPM: Optional[str]
    numberOfVersionsRetention: Optional[int]
    numberOfDaysRetention: Optional[int]
    autoPurgeEnabled: bool
    creationTime: int
    lastModificationTime: int


class SecretManagement(TypedDict, total=False):
    automaticManagementEnabled: bool
    manualManagementReason: Optional[str]
    status: Optional[str]
    lastModifiedTime: Optional[int]
    lastReconciledTime: Optional[int]
    lastVerifiedTime: Optional[int]


class RemoteMachinesAccess(TypedDict, total=False):
    remoteMachines: Optional[str]
    accessRestrictedToRemoteMachines: bool


class AccountRecord(TypedDict, total=False):
    id: str
    name: str
    address: Optional[str]
    userName: Optional[str]
    platformId: Optional[str]
    safeName: str
    secretType: Optional[str]
    platformAccountProperties: Dict[str, Any]
    secretManagement: SecretManagement
    remoteMachinesAccess: RemoteMachinesAccess
    createdTime: Optional[int]
    categoryModificationTime: Optional[int]


class GroupMembership(TypedDict, total=False):
    groupID: int
    groupName: str
    groupType: str


class UserRecord(TypedDict, total=False):
    id: int
    username: str
    source: str
    userType: str
    componentUser: bool
    suspended: bool
    enableUser: bool
    vaultAuthorization: List[str]
    groupsMembership: List[GroupMembership]
    personalDetails: Dict[str, Any]
    internet: Dict[str, Any]
    location: Optional[str]
    lastSuccessfulLoginDate: Optional[int]
    expiryDate: Optional[int]
    passwordNeverExpires: bool
    changePassOnNextLogon: bool


@dataclass(frozen=True)
class Column:
    header: str
    path: str  # dotted path into the record, e.g. "secretManagement.status"
    kind: str = TEXT


@dataclass(frozen=True)
class ColumnSchema:
    """
    Fixed CSV layout for one export file.
    When explode is set, each element of that list field becomes its own row and
    is reachable from column paths under the "member." prefix.
    """

    name: str
    columns: Tuple[Column, ...]
    explode: Optional[str] = None

    @property
    def headers(self) -> List[str]:
        return [c.header for c in self.columns]


ACCOUNT_SCHEMA = ColumnSchema(
    name="accounts",
    columns=(
        Column("id", "id"),
        Column("name", "name"),
        Column("address", "address"),
        Column("userName", "userName"),
        Column("platformId", "platformId"),
        Column("safeName", "safeName"),
        Column("secretType", "secretType"),
        Column("automaticManagementEnabled", "secretManagement.automaticManagementEnabled"),
        Column("manualManagementReason", "secretManagement.manualManagementReason"),
        Column("status", "secretManagement.status"),
        Column("lastModifiedDate", "secretManagement.lastModifiedTime", DATE),
        Column("lastReconciledDate", "secretManagement.lastReconciledTime", DATE),
        Column("lastVerifiedDate", "secretManagement.lastVerifiedTime", DATE),
        Column("createdDate", "createdTime", DATE),
        Column("categoryModificationDate", "categoryModificationTime", DATE),
        Column("remoteMachines", "remoteMachinesAccess.remoteMachines"),
        Column("accessRestrictedToRemoteMachines", "remoteMachinesAccess.accessRestrictedToRemoteMachines"),
        Column("logonDomain", "platformAccountProperties.LogonDomain"),
        Column("port", "platformAccountProperties.Port"),
        Column("database", "platformAccountProperties.Database"),
        Column("dualAccountStatus", "platformAccountProperties.DualAccountStatus"),
        Column("virtualUsername", "platformAccountProperties.VirtualUsername"),
        Column("index", "platformAccountProperties.Index"),
        Column("description", "platformAccountProperties.Description"),
    ),
)

SAFE_SCHEMA = ColumnSchema(
    name="safes",
    columns=(
        Column("safeName", "safeName"),
        Column("safeUrlId", "safeUrlId"),
        Column("safeNumber", "safeNumber"),
        Column("description", "description"),
        Column("location", "location"),
        Column("owner", "creator.name"),
        Column("managingCPM", "managingCPM"),
        Column("olacEnabled", "olacEnabled"),
        Column("numberOfVersionsRetention", "numberOfVersionsRetention"),
        Column("numberOfDaysRetention", "numberOfDaysRetention"),
        Column("autoPurgeEnabled", "autoPurgeEnabled"),
        Column("createdDate", "creationTime", DATE),
        Column("lastModifiedDate", "lastModificationTime", DATE),
    ),
)

USER_DETAILS_SCHEMA = ColumnSchema(
    name="users",
    columns=(
        Column("id", "id"),
        Column("username", "username"),
        Column("source", "source"),
        Column("userType", "userType"),
        Column("componentUser", "componentUser"),
        Column("suspended", "suspended"),
        Column("enableUser", "enableUser"),
        Column("vaultAuthorization", "vaultAuthorization"),
        Column("firstName", "personalDetails.firstName"),
        Column("lastName", "personalDetails.lastName"),
        Column("email", "internet.businessEmail"),
        Column("location", "location"),
        Column("lastSuccessfulLoginDate", "lastSuccessfulLoginDate", DATE),
        Column("expiryDate", "expiryDate", DATE),
        Column("passwordNeverExpires", "passwordNeverExpires"),
        Column("changePassOnNextLogon", "changePassOnNextLogon"),
    ),
)

USER_GROUPS_SCHEMA = ColumnSchema(
    name="user_groups",
    explode="groupsMembership",
    columns=(
        Column("userId", "id"),
        Column("username", "username"),
        Column("groupId", "member.groupID"),
        Column("groupName", "member.groupName"),
        Column("groupType", "member.groupType"),
    ),
)

# Identifier used for duplicate detection, per collection.
SAFE_ID_KEY = "safeName"
ACCOUNT_ID_KEY = "id"
USER_ID_KEY = "id"


@dataclass(frozen=True)
class OutputPaths:
    root: Path
    accounts_csv: Path
    users_csv: Path
    user_groups_csv: Path
    safes_csv: Path
    run_summary_json: Path
    logs_dir: Path
    run_log: Path


def resolve_output_paths(outdir: Path) -> OutputPaths:
    root = outdir
    logs_dir = root / "logs"
    return OutputPaths(
        root=root,
        accounts_csv=root / "accounts.csv",
        users_csv=root / "users.csv",
        user_groups_csv=root / "user_groups.csv",
        safes_csv=root / "safes.csv",
        run_summary_json=root / "run_summary.json",
        logs_dir=logs_dir,
        run_log=logs_dir / "vault-export.log",
    )
