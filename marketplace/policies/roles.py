def is_shipper(actor) -> bool:
    return getattr(actor, "role", None) == "shipper"


def is_carrier(actor) -> bool:
    return getattr(actor, "role", None) == "carrier"


def is_admin(actor) -> bool:
    return getattr(actor, "role", None) == "admin"
