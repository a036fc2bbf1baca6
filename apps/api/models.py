from enum import Enum


class Role(str, Enum):
    CARRIER = "carrier"
    DRIVER = "driver"
    SHIPPER = "shipper"
    ACCOUNTING = "accounting"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ADMIN_ROLES = {Role.ADMIN.value, Role.SUPER_ADMIN.value}
