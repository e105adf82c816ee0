from datetime import datetime
from enum import Enum

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class ProcessStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class JobStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    OVERDUE = "Overdue"


class Role(str, Enum):
    ADMIN = "admin"
    EMPLOYEE = "employee"


# ========================
# Reference data
# ========================
PROCESS_NAMES = [
    "Pre-Engg",
    "SHEARING",
    "CNC",
    "PTH",
    "Dry Film",
    "Plating",
    "ETCHING",
    "Pre-Mask Q.C.",
    "PISM - Coating",
    "PISM Expose & Develop",
    "HAL",
    "HAL Q.C",
    "LEGEND",
    "Routing",
    "BBT",
    "Q.C",
    "PACKING",
]

# (process_id, process_name, sequence_number)
PROCESSES = [
    (f"proc-{seq}", name, seq) for seq, name in enumerate(PROCESS_NAMES, start=1)
]

# (id, name, role, department)
USERS = [("user-1", "Admin User", Role.ADMIN.value, "Management")] + [
    (f"user-{seq + 1}", f"{name} Team", Role.EMPLOYEE.value, name)
    for seq, name in enumerate(PROCESS_NAMES, start=1)
]

# Processes that count IN/OUT in PCBs; every other process counts launched panels
QC_STYLE_PROCESSES = ["Pre-Mask Q.C.", "BBT", "Q.C", "PACKING"]

# Rework is only possible before this process
REWORK_CUTOFF_PROCESS = "Pre-Mask Q.C."


def camel(name):
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def parse_timestamp(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)


# ========================
# Database Models
# ========================
class User(db.Model):
    id = db.Column(db.String(50), primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=Role.EMPLOYEE.value)
    department = db.Column(db.String(100))

    @property
    def is_admin(self):
        return self.role == Role.ADMIN.value

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "department": self.department,
        }


class Process(db.Model):
    process_id = db.Column(db.String(20), primary_key=True)
    process_name = db.Column(db.String(100), unique=True, nullable=False)
    sequence_number = db.Column(db.Integer, unique=True, nullable=False)

    def to_dict(self):
        return {
            "processId": self.process_id,
            "processName": self.process_name,
            "sequenceNumber": self.sequence_number,
        }


class Job(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.String(50), unique=True, nullable=False)
    job_key = db.Column(db.String(50), unique=True, nullable=False, index=True)
    ref_no = db.Column(db.String(50))
    ref_key = db.Column(db.String(50), index=True)
    customer_name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    part_no = db.Column(db.String(100))
    quantity = db.Column(db.Integer, nullable=False)
    priority = db.Column(db.String(20), default="Medium")
    po_no = db.Column(db.String(100))
    order_date = db.Column(db.String(32))
    due_date = db.Column(db.String(32))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    status = db.Column(db.String(20), default=JobStatus.PENDING.value)

    # Traveller card attributes
    is_repeat = db.Column(db.Boolean, default=False)
    layer_type = db.Column(db.String(50))
    lead_time = db.Column(db.String(50))
    launched_pcbs = db.Column(db.Integer)
    launched_panels = db.Column(db.Integer)
    launched_pcb_sqm = db.Column(db.Float)
    launched_panel_sqm = db.Column(db.Float)
    pnl_hole = db.Column(db.Integer)
    total_hole = db.Column(db.Integer)
    pcb_size_width = db.Column(db.Float)
    pcb_size_height = db.Column(db.Float)
    array_size_width = db.Column(db.Float)
    array_size_height = db.Column(db.Float)
    ups_array_width = db.Column(db.Integer)
    ups_array_height = db.Column(db.Integer)
    panel_size_width = db.Column(db.Float)
    panel_size_height = db.Column(db.Float)
    ups_panel = db.Column(db.Integer)
    material = db.Column(db.String(50))
    copper_weight = db.Column(db.String(50))
    thickness = db.Column(db.Float)
    source = db.Column(db.String(50))
    ink = db.Column(db.String(50))
    ul_logo = db.Column(db.Boolean, default=False)
    solder_mask = db.Column(db.String(50))
    legend_colour = db.Column(db.String(50))
    legend_side = db.Column(db.String(50))
    surface_finish = db.Column(db.String(50))
    v_grooving = db.Column(db.Boolean, default=False)
    cutting = db.Column(db.String(50))
    m_trace_setup = db.Column(db.String(50))
    one_p = db.Column(db.String(50))
    setup = db.Column(db.String(50))
    sheet_size_width = db.Column(db.Float)
    sheet_size_height = db.Column(db.Float)
    sheet_utilization = db.Column(db.Float)
    panels_in_sheet = db.Column(db.Integer)
    supply_info = db.Column(db.String(200))
    testing_required = db.Column(db.String(100))
    prepared_by = db.Column(db.String(100))

    @property
    def process_key(self):
        return (self.ref_no or self.job_id).lower()

    def to_dict(self):
        data = {}
        for column in self.__table__.columns:
            if column.name in INTERNAL_JOB_COLUMNS:
                continue
            value = getattr(self, column.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            data[camel(column.name)] = value
        return data


# Lookup keys and the surrogate primary key never leave the store
INTERNAL_JOB_COLUMNS = ("id", "job_key", "ref_key")

# Payload key -> column, for every field a caller may set on a job
JOB_FIELDS = {
    camel(column.name): column
    for column in Job.__table__.columns
    if column.name not in INTERNAL_JOB_COLUMNS + ("created_at", "status")
}


class JobProcess(db.Model):
    ROW_FIELDS = (
        "id",
        "job_id",
        "process_id",
        "assigned_to",
        "status",
        "start_time",
        "end_time",
        "remarks",
        "quantity_in",
        "quantity_out",
        "rework_quantity_in",
        "rework_quantity_out",
        "reject_quantity",
        "launched_panels",
    )

    id = db.Column(db.String(120), primary_key=True)
    job_id = db.Column(db.String(50), nullable=False, index=True)
    process_id = db.Column(db.String(20), db.ForeignKey("process.process_id"), nullable=False)
    assigned_to = db.Column(db.String(50))
    status = db.Column(db.String(20), nullable=False, default=ProcessStatus.PENDING.value)
    start_time = db.Column(db.DateTime)
    end_time = db.Column(db.DateTime)
    remarks = db.Column(db.Text)
    quantity_in = db.Column(db.Integer)
    quantity_out = db.Column(db.Integer)
    rework_quantity_in = db.Column(db.Integer)
    rework_quantity_out = db.Column(db.Integer)
    reject_quantity = db.Column(db.Integer)
    launched_panels = db.Column(db.Integer)

    process = db.relationship("Process")

    def snapshot(self):
        """Plain dict copy of this row for the workflow engine."""
        row = {name: getattr(self, name) for name in self.ROW_FIELDS}
        row["status"] = ProcessStatus(row["status"])
        return row

    def apply(self, row):
        for name in self.ROW_FIELDS:
            if name == "id":
                continue
            value = row.get(name)
            if name == "status":
                value = ProcessStatus(value).value
            setattr(self, name, value)

    @classmethod
    def from_row(cls, row):
        jp = cls(id=row["id"])
        jp.apply(row)
        return jp

    def to_dict(self):
        return self.row_to_dict(self.snapshot())

    @classmethod
    def row_to_dict(cls, row):
        data = {}
        for name in cls.ROW_FIELDS:
            value = row.get(name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            data[camel(name)] = value
        return data

    @classmethod
    def row_from_dict(cls, data):
        """Inverse of to_dict, used for restore and undo snapshots."""
        row = {name: data.get(camel(name)) for name in cls.ROW_FIELDS}
        row["status"] = ProcessStatus(row["status"] or ProcessStatus.PENDING.value)
        row["start_time"] = parse_timestamp(row["start_time"])
        row["end_time"] = parse_timestamp(row["end_time"])
        return row


class UndoEntry(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(36), unique=True, nullable=False)
    job_key = db.Column(db.String(50), nullable=False, index=True)
    snapshot = db.Column(db.JSON, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
