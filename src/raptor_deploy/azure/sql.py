"""Azure SQL permissions for the services' managed identities.

The backend (and, when deployed, processes) Container Apps authenticate to
Azure SQL with user-assigned managed identities. Those identities need
contained database users and roles, which only a SQL admin connection can
create, so this runs as a hook after the identities exist.

Key Concepts:
    render_permissions_script: Idempotent T-SQL that creates each identity
        as an external-provider user and adds it to db_datareader,
        db_datawriter and db_ddladmin (Flyway migrations need DDL).
    ensure_sql_permissions: Discovers server, database and identities,
        opens a temporary firewall rule for the caller's public IP, runs the
        script with ``sqlcmd`` (or prints it for manual execution) and always
        removes the rule again.
    grant_directory_readers: Adds the SQL server's system identity to the
        Entra ID "Directory Readers" role via Microsoft Graph so SQL can
        expand group membership. Permission denial is reported, not fatal.

Tags:
    sql, managed-identity, firewall, sqlcmd, graph
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from raptor_deploy.azure.runner import AzdEnvironment, AzureCli, CommandRunner
from raptor_deploy.errors import ErrorContext, IdentityError, PreconditionError
from raptor_deploy.logging import get_logger
from raptor_deploy.results import DirectoryReadersResult, SqlPermissionResult, StepStatus

logger = get_logger(__name__)

FIREWALL_RULE_NAME = "AllowDeploymentScript"
IP_ECHO_URL = "https://api.ipify.org"
GRAPH = "https://graph.microsoft.com/v1.0"
DIRECTORY_READERS = "Directory Readers"
DATABASE_ROLES = ("db_datareader", "db_datawriter", "db_ddladmin")
IDENTITY_SERVICES = ("backend", "processes")


@dataclass
class SqlIdentity:
    """A managed identity to grant database access to."""

    service: str
    name: str


# ---------------------------------------------------------------------------
# T-SQL
# ---------------------------------------------------------------------------


def _identity_block(identity: SqlIdentity) -> str:
    label = identity.service.capitalize()
    svc = identity.service
    name = identity.name
    lines = [
        "",
        "-- ============================================",
        f"-- {label} Service Permissions",
        "-- ============================================",
        "",
        f"IF NOT EXISTS (SELECT * FROM sys.database_principals WHERE name = '{name}')",
        "BEGIN",
        f"    PRINT 'Creating {svc} user from external provider...'",
        f"    CREATE USER [{name}] FROM EXTERNAL PROVIDER",
        "END",
        "ELSE",
        "BEGIN",
        f"    PRINT '{label} user already exists.'",
        "END",
        "GO",
    ]
    for role in DATABASE_ROLES:
        lines += [
            "",
            f"IF IS_ROLEMEMBER('{role}', '{name}') = 0",
            "BEGIN",
            f"    PRINT 'Granting {role} role to {svc} identity...'",
            f"    ALTER ROLE {role} ADD MEMBER [{name}]",
            "END",
            "ELSE",
            "BEGIN",
            f"    PRINT '{role} role already assigned to {svc} identity.'",
            "END",
            "GO",
        ]
    lines += ["", f"PRINT 'Permissions granted successfully to [{name}].'", "GO"]
    return "\n".join(lines)


def render_permissions_script(
    database: str,
    identities: list[SqlIdentity],
    generated_at: datetime | None = None,
) -> str:
    """T-SQL granting each identity read/write/DDL on ``database``."""
    if not identities:
        raise PreconditionError("At least one identity is required to render SQL permissions")
    generated = (generated_at or datetime.now(UTC)).strftime("%Y-%m-%d %H:%M:%S UTC")
    header = [
        "-- ============================================",
        "-- SQL Permissions for Managed Identities",
        "-- ============================================",
        f"-- Database: {database}",
        *(f"-- {i.service.capitalize()} Identity: {i.name}" for i in identities),
        f"-- Generated: {generated}",
        "-- ============================================",
    ]
    names = ", ".join(f"'{i.name}'" for i in identities)
    verify = [
        "",
        "-- ============================================",
        "-- Verify users were created",
        "-- ============================================",
        "SELECT",
        "    name as UserName,",
        "    type_desc as UserType,",
        "    authentication_type_desc as AuthType,",
        "    create_date as CreatedDate",
        "FROM sys.database_principals",
        f"WHERE name IN ({names})",
        "ORDER BY name;",
        "GO",
    ]
    blocks = [_identity_block(i) for i in identities]
    return "\n".join(header) + "\n" + "\n".join(blocks) + "\n" + "\n".join(verify) + "\n"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def public_ip(http: httpx.Client | None = None) -> str:
    """Caller's public IP, or ``""`` when the echo service is unreachable."""
    client = http or httpx.Client(timeout=10.0)
    try:
        resp = client.get(IP_ECHO_URL)
        resp.raise_for_status()
        return resp.text.strip()
    except httpx.HTTPError as exc:
        logger.warning("sql.public_ip.failed", error=str(exc))
        return ""
    finally:
        if http is None:
            client.close()


def find_identities(az: AzureCli, resource_group: str) -> list[SqlIdentity]:
    found = []
    for service in IDENTITY_SERVICES:
        name = az.tsv(["identity", "list", "-g", resource_group, "--query", f"[?contains(name, '{service}')].name | [0]"])
        if name:
            found.append(SqlIdentity(service=service, name=name))
    return found


def _skip(result: SqlPermissionResult, reason: str) -> SqlPermissionResult:
    result.status = StepStatus.SKIPPED
    result.message = reason
    logger.info("sql.permissions.skipped", reason=reason)
    return result


def ensure_sql_permissions(
    az: AzureCli,
    azd: AzdEnvironment,
    *,
    ip_lookup: Callable[[], str] = public_ip,
    sqlcmd: CommandRunner | None = None,
) -> SqlPermissionResult:
    """Grant the service identities access to the application database.

    Skips (without failing) when SQL is disabled or not yet deployed, when no
    admin password is configured, or when public network access is off.
    """
    result = SqlPermissionResult()
    if azd.get_value("ENABLE_SQL_DATABASE", "true") != "true":
        return _skip(result, "SQL Database is disabled")

    resource_group = azd.get_value("AZURE_RESOURCE_GROUP")
    admin_login = azd.get_value("SQL_ADMIN_LOGIN", "sqladmin")
    admin_password = azd.get_value("SQL_ADMIN_PASSWORD")
    if not admin_password:
        return _skip(result, "SQL_ADMIN_PASSWORD is not set; set it with 'azd env set SQL_ADMIN_PASSWORD ...'")

    server = az.tsv(["sql", "server", "list", "-g", resource_group, "--query", "[0].name"])
    if not server:
        return _skip(result, "SQL Server not found; it will be created by the main deployment")
    result.server = server

    database = az.tsv(["sql", "db", "list", "-g", resource_group, "-s", server, "--query", "[?name != 'master'].name | [0]"])
    if not database:
        return _skip(result, "SQL Database not found; it will be created by the main deployment")
    result.database = database

    identities = find_identities(az, resource_group)
    if not any(i.service == "backend" for i in identities):
        return _skip(result, "Backend managed identity not found yet")
    result.identities = [i.name for i in identities]

    fqdn = az.tsv(["sql", "server", "show", "-n", server, "-g", resource_group, "--query", "fullyQualifiedDomainName"])
    access = az.tsv(["sql", "server", "show", "-n", server, "-g", resource_group, "--query", "publicNetworkAccess"])
    if access == "Disabled":
        return _skip(
            result,
            f"SQL Server {server} has public access disabled; temporarily run "
            f"'az sql server update -n {server} -g {resource_group} --enable-public-network true' "
            "or run the script from a machine with VNet access",
        )

    script = render_permissions_script(database, identities)
    ip = ip_lookup()
    if ip:
        existing = az.tsv([
            "sql", "server", "firewall-rule", "list",
            "-g", resource_group, "-s", server,
            "--query", f"[?name=='{FIREWALL_RULE_NAME}'].name | [0]",
        ])
        if not existing:
            logger.info("sql.firewall.create", server=server, ip=ip)
            az.execute([
                "sql", "server", "firewall-rule", "create",
                "-g", resource_group, "-s", server,
                "-n", FIREWALL_RULE_NAME,
                "--start-ip-address", ip,
                "--end-ip-address", ip,
                "-o", "none",
            ])
            result.firewall_rule_created = True

    try:
        if sqlcmd is None and CommandRunner.is_available("sqlcmd"):
            sqlcmd = CommandRunner("sqlcmd")
        if sqlcmd is not None:
            sqlcmd.run(
                ["-S", fqdn, "-d", database, "-U", admin_login, "-b"],
                input=script,
                env={"SQLCMDPASSWORD": admin_password},
            )
            result.executed = True
            result.message = "SQL permissions granted successfully"
            logger.info("sql.permissions.granted", server=server, database=database, identities=result.identities)
        else:
            result.status = StepStatus.WARNING
            result.script = script
            result.message = (
                f"sqlcmd not found; run the script manually against {fqdn}/{database} "
                "(Azure AD authentication)"
            )
            logger.warning("sql.sqlcmd.missing", server=fqdn, database=database)
    finally:
        if result.firewall_rule_created:
            logger.info("sql.firewall.delete", server=server)
            az.succeeds([
                "sql", "server", "firewall-rule", "delete",
                "-g", resource_group, "-s", server,
                "-n", FIREWALL_RULE_NAME,
                "-o", "none",
            ])
    return result


# ---------------------------------------------------------------------------
# Directory Readers
# ---------------------------------------------------------------------------


def grant_directory_readers(az: AzureCli, azd: AzdEnvironment) -> DirectoryReadersResult:
    """Make the SQL server's identity a member of Directory Readers."""
    resource_group = azd.get_value("AZURE_RESOURCE_GROUP")
    server = azd.get_value("sqlServerName")
    if not server:
        server = az.tsv(["sql", "server", "list", "-g", resource_group, "--query", "[0].name"])
        if not server:
            raise PreconditionError(
                f"No SQL Server found in resource group {resource_group}",
                context=ErrorContext(resource_group=resource_group),
            )
    result = DirectoryReadersResult(server=server)

    principal_id = az.tsv(["sql", "server", "show", "-g", resource_group, "-n", server, "--query", "identity.principalId"])
    if not principal_id or principal_id == "null":
        raise IdentityError(
            f"SQL Server {server} does not have a system-assigned managed identity",
            context=ErrorContext(resource_group=resource_group, metadata={"server": server}),
        )
    result.principal_id = principal_id

    role_id = az.tsv([
        "rest", "--method", "GET",
        "--uri", f"{GRAPH}/directoryRoles",
        "--query", f"value[?displayName=='{DIRECTORY_READERS}'].id | [0]",
    ])
    if not role_id:
        raise PreconditionError("Directory Readers role not found; it may need to be activated first")
    result.role_id = role_id

    member = az.tsv([
        "rest", "--method", "GET",
        "--uri", f"{GRAPH}/directoryRoles/{role_id}/members",
        "--query", f"value[?id=='{principal_id}'].id | [0]",
    ])
    if member:
        result.action = "already_member"
        result.message = "SQL Server identity is already a member of Directory Readers"
        return result

    body = json.dumps({"@odata.id": f"{GRAPH}/directoryObjects/{principal_id}"})
    output = az.combined([
        "rest", "--method", "POST",
        "--uri", f"{GRAPH}/directoryRoles/{role_id}/members/$ref",
        "--body", body,
        "--headers", "Content-Type=application/json",
    ])
    if "Forbidden" in output or "Authorization_RequestDenied" in output:
        result.status = StepStatus.WARNING
        result.action = "denied"
        result.message = (
            "Insufficient permissions to grant Directory Readers (requires RoleManagement.ReadWrite.Directory "
            f"or Privileged Role Administrator). Assign the role to {server} manually; Azure AD group admin "
            "will not work for service principals until then."
        )
        logger.warning("sql.directory_readers.denied", server=server)
    elif "already exists" in output or "already a member" in output:
        result.action = "already_member"
        result.message = "SQL Server identity is already a member (confirmed)"
    else:
        result.action = "granted"
        result.message = "Granted Directory Readers role to SQL Server identity"
        logger.info("sql.directory_readers.granted", server=server, principal_id=principal_id)
    return result
