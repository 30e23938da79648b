"""identity_etl.identity_entities

ASP.NET Identity tables: roles, role claims, users (with role links),
user claims, user logins and user tokens.

CSV headers are the column names of the target tables, e.g.

    role:            Name, Id, ConcurrencyStamp
    roleclaim:       RoleId, ClaimType, ClaimValue
    user:            Id, UserName, Email, PhoneNumber, EmailConfirmed, Roles, Password
    aspnetuserclaim: UserId, ClaimType, ClaimValue
    aspnetuserlogin: LoginProvider, ProviderKey, ProviderDisplayName, UserId
    aspnetusertoken: UserId, LoginProvider, Name, Value

User Roles is a ',' ';' or '|' delimited list of role names.
"""

from __future__ import annotations

from identity_etl.caches import DuplicateKeyIndex, LookupCache, build_key
from identity_etl.normalize import normalize_key, parse_bool, split_role_names
from identity_etl.pipeline import (
    EntityStrategy,
    ImportContext,
    Record,
    Reference,
    Shape,
    values_equal,
)
from identity_etl.store import Table

ROLES = Table("AspNetRoles")
ROLE_CLAIMS = Table("AspNetRoleClaims")
USERS = Table("AspNetUsers")
USER_ROLES = Table("AspNetUserRoles")
USER_CLAIMS = Table("AspNetUserClaims")
USER_LOGINS = Table("AspNetUserLogins")
USER_TOKENS = Table("AspNetUserTokens")


def _same_headers(*names: str) -> dict[str, tuple[str, ...]]:
    return {n: (n,) for n in names}


# ---------------------------------------------------------------------------
# role
# ---------------------------------------------------------------------------

def _build_role(ctx: ImportContext, fields: Record) -> Record:
    return {
        "Id": fields.get("Id") or ctx.new_id(),
        "Name": fields["Name"],
        "NormalizedName": normalize_key(fields["Name"]),
        "ConcurrencyStamp": fields.get("ConcurrencyStamp") or ctx.new_id(),
    }


def _merge_role(ctx: ImportContext, existing: Record, fields: Record) -> Record:
    changes: Record = {}
    if existing.get("Name") != fields["Name"]:
        changes["Name"] = fields["Name"]
    stamp = fields.get("ConcurrencyStamp")
    if stamp is not None and existing.get("ConcurrencyStamp") != stamp:
        changes["ConcurrencyStamp"] = stamp
    return changes


ROLE = EntityStrategy(
    name="role",
    table=ROLES,
    shape=Shape.NATURAL_KEY,
    columns=_same_headers("Name", "Id", "ConcurrencyStamp"),
    required=("Name",),
    max_lengths={"Name": 256, "Id": 450},
    stamp_column="ConcurrencyStamp",
    builder=_build_role,
    merger=_merge_role,
    identity=lambda f: {"NormalizedName": normalize_key(f["Name"])},
    identities=lambda r: [{"NormalizedName": r["NormalizedName"]}],
    update_key=lambda r: {"Id": r["Id"]},
)


# ---------------------------------------------------------------------------
# roleclaim / aspnetuserclaim (append-only)
# ---------------------------------------------------------------------------

ROLE_CLAIM = EntityStrategy(
    name="roleclaim",
    table=ROLE_CLAIMS,
    shape=Shape.APPEND,
    columns=_same_headers("RoleId", "ClaimType", "ClaimValue"),
    required=("RoleId", "ClaimType"),
    key_columns=("ClaimType", "ClaimValue"),
    parent_field="RoleId",
    reference=Reference("RoleId", ROLES),
    reject_counter="invalid",
)

USER_CLAIM = EntityStrategy(
    name="aspnetuserclaim",
    table=USER_CLAIMS,
    shape=Shape.APPEND,
    columns=_same_headers("UserId", "ClaimType", "ClaimValue"),
    required=("UserId", "ClaimType"),
    key_columns=("ClaimType", "ClaimValue"),
    parent_field="UserId",
    reference=Reference("UserId", USERS),
)


# ---------------------------------------------------------------------------
# user
# ---------------------------------------------------------------------------

def _build_user(ctx: ImportContext, fields: Record) -> Record:
    user_name = fields["UserName"]
    email = fields.get("Email")
    record: Record = {
        "Id": fields.get("Id") or ctx.new_id(),
        "UserName": user_name,
        "NormalizedUserName": normalize_key(user_name),
        "Email": email,
        "NormalizedEmail": normalize_key(email),
        "EmailConfirmed": bool(fields.get("EmailConfirmed")),
        "PasswordHash": None,
        "SecurityStamp": ctx.new_id(),
        "ConcurrencyStamp": ctx.new_id(),
        "PhoneNumber": fields.get("PhoneNumber"),
        "PhoneNumberConfirmed": False,
        "TwoFactorEnabled": False,
        "LockoutEnabled": False,
        "AccessFailedCount": 0,
    }
    password = fields.get("Password")
    if password:
        record["PasswordHash"] = ctx.hasher.hash_password(record, password)
    return record


def _merge_user(ctx: ImportContext, existing: Record, fields: Record) -> Record:
    user_name = fields["UserName"]
    incoming: Record = {
        "UserName": user_name,
        "NormalizedUserName": normalize_key(user_name),
    }
    if fields.get("Email") is not None:
        incoming["Email"] = fields["Email"]
        incoming["NormalizedEmail"] = normalize_key(fields["Email"])
    if fields.get("PhoneNumber") is not None:
        incoming["PhoneNumber"] = fields["PhoneNumber"]
    if fields.get("EmailConfirmed") is not None:
        incoming["EmailConfirmed"] = fields["EmailConfirmed"]

    changes = {
        column: value
        for column, value in incoming.items()
        if not values_equal(existing.get(column), value)
    }

    # Re-hash only when the stored hash no longer matches the CSV password.
    password = fields.get("Password")
    if password and not ctx.hasher.verify(existing, existing.get("PasswordHash"), password):
        changes["PasswordHash"] = ctx.hasher.hash_password(existing, password)
        changes["SecurityStamp"] = ctx.new_id()
    return changes


def _link_user_roles(ctx: ImportContext, user: Record, fields: Record, is_new: bool) -> None:
    """Add AspNetUserRoles links for every known role name; warn on the rest."""
    names = split_role_names(fields.get("Roles"))
    if not names:
        return
    roles = ctx.cache(
        "roles_by_name", lambda: LookupCache(ctx.store, ROLES, "NormalizedName", "Id")
    )
    links = ctx.cache(
        "user_roles", lambda: DuplicateKeyIndex(ctx.store, USER_ROLES, "UserId", ("RoleId",))
    )
    user_id = user["Id"]
    if is_new:
        links.seed(user_id)

    for name in names:
        role_id = roles.get(normalize_key(name))
        if role_id is None:
            ctx.warn(f"Role not found (skipped): {name} [user={user['UserName']}]")
            continue
        key = build_key(role_id)
        if links.contains(user_id, key):
            continue
        links.add(user_id, key)
        ctx.pending.add_insert(USER_ROLES, {"UserId": user_id, "RoleId": role_id})


USER = EntityStrategy(
    name="user",
    table=USERS,
    shape=Shape.NATURAL_KEY,
    columns=_same_headers(
        "Id", "UserName", "Email", "PhoneNumber", "EmailConfirmed", "Roles", "Password"
    ),
    required=("UserName",),
    max_lengths={"Id": 450, "UserName": 256, "Email": 256},
    converters={"EmailConfirmed": parse_bool},
    stamp_column="ConcurrencyStamp",
    write_order=(USER_ROLES,),
    builder=_build_user,
    merger=_merge_user,
    identity=lambda f: (
        {"Id": f["Id"]} if f.get("Id")
        else {"NormalizedUserName": normalize_key(f["UserName"])}
    ),
    identities=lambda r: [{"Id": r["Id"]}, {"NormalizedUserName": r["NormalizedUserName"]}],
    after_resolve=_link_user_roles,
)


# ---------------------------------------------------------------------------
# aspnetuserlogin / aspnetusertoken (composite keys)
# ---------------------------------------------------------------------------

USER_LOGIN = EntityStrategy(
    name="aspnetuserlogin",
    table=USER_LOGINS,
    shape=Shape.COMPOSITE_KEY,
    columns=_same_headers("LoginProvider", "ProviderKey", "ProviderDisplayName", "UserId"),
    required=("LoginProvider", "ProviderKey", "UserId"),
    max_lengths={
        "LoginProvider": 128,
        "ProviderKey": 128,
        "ProviderDisplayName": 256,
        "UserId": 450,
    },
    key_columns=("LoginProvider", "ProviderKey"),
    reference=Reference("UserId", USERS),
)

USER_TOKEN = EntityStrategy(
    name="aspnetusertoken",
    table=USER_TOKENS,
    shape=Shape.COMPOSITE_KEY,
    columns=_same_headers("UserId", "LoginProvider", "Name", "Value"),
    required=("UserId", "LoginProvider", "Name"),
    max_lengths={"UserId": 450, "LoginProvider": 128, "Name": 128},
    key_columns=("UserId", "LoginProvider", "Name"),
    reference=Reference("UserId", USERS),
)

STRATEGIES = (ROLE, ROLE_CLAIM, USER, USER_CLAIM, USER_LOGIN, USER_TOKEN)
