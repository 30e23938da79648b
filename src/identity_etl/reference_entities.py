"""identity_etl.reference_entities

Reference data outside the Identity schema: customers and the external
employee feed (ExternalData.ExtEmployeeFromSinta).
"""

from __future__ import annotations

from identity_etl.normalize import parse_bool, parse_datetime, parse_small_int
from identity_etl.pipeline import EntityStrategy, Shape
from identity_etl.store import Table

CUSTOMERS = Table("Customers")
EXT_EMPLOYEES = Table("ExtEmployeeFromSinta", schema="ExternalData")


CUSTOMER = EntityStrategy(
    name="customer",
    table=CUSTOMERS,
    shape=Shape.NATURAL_KEY,
    columns={"Code": ("Code",), "Name": ("Name",), "Email": ("Email",)},
    required=("Code", "Name"),
    max_lengths={"Code": 50, "Name": 200, "Email": 200},
    key_columns=("Code",),
)


# Several export tools spell these headers differently; first match wins.
EXT_EMPLOYEE_COLUMNS: dict[str, tuple[str, ...]] = {
    "EmployeeId": ("EmployeeId", "Employee ID", "EmpId"),
    "EmployeeName": ("EmployeeName", "Employee Name", "EmpName"),
    "PositionId": ("PositionId", "Position ID"),
    "PositionName": ("PositionName", "Position Name"),
    "Area": ("Area",),
    "PlantArea": ("PlantArea", "Plant Area"),
    "Directorate": ("Directorate",),
    "Function": ("Function",),
    "Department": ("Department",),
    "Email": ("Email",),
    "Level": ("Level",),
    "SuperiorId": ("SuperiorId", "Superior ID"),
    "SuperiorPositionId": ("SuperiorPositionId", "Superior Position ID"),
    "UserName": ("UserName", "Username"),
    "Unit": ("Unit",),
    "Posgrd": ("Posgrd", "PosGrd"),
    "CostCenter": ("CostCenter", "Cost Center"),
    "Entity": ("Entity",),
    "LastUpdate": ("LastUpdate", "Last Update", "UpdatedAt"),
    "HelperIsDelegate": ("HelperIsDelegate", "Helper_IsDelegate"),
    "HelperEmployeePositionTypeId": (
        "HelperEmployeePositionTypeId",
        "Helper_EmployeePositionTypeId",
    ),
}

EXT_EMPLOYEE_MAX_LENGTHS = {
    "EmployeeId": 20,
    "EmployeeName": 100,
    "PositionId": 100,
    "PositionName": 100,
    "Area": 100,
    "PlantArea": 100,
    "Directorate": 100,
    "Function": 100,
    "Department": 100,
    "Email": 100,
    "Level": 100,
    "SuperiorId": 20,
    "SuperiorPositionId": 100,
    "UserName": 30,
    "Unit": 50,
    "Posgrd": 100,
    "CostCenter": 10,
    "Entity": 100,
}

EXT_EMPLOYEE = EntityStrategy(
    name="extemployee",
    table=EXT_EMPLOYEES,
    shape=Shape.NATURAL_KEY,
    columns=EXT_EMPLOYEE_COLUMNS,
    required=("EmployeeId", "PositionId"),
    max_lengths=EXT_EMPLOYEE_MAX_LENGTHS,
    converters={
        "LastUpdate": parse_datetime,
        "HelperIsDelegate": parse_bool,
        "HelperEmployeePositionTypeId": parse_small_int,
    },
    column_names={
        "HelperIsDelegate": "Helper_IsDelegate",
        "HelperEmployeePositionTypeId": "Helper_EmployeePositionTypeId",
    },
    key_columns=("EmployeeId", "PositionId"),
)

STRATEGIES = (CUSTOMER, EXT_EMPLOYEE)
