STOCK_VIEW = "STOCK_VIEW"
STOCK_MANAGE = "STOCK_MANAGE"
TRANSFER_VIEW = "TRANSFER_VIEW"
TRANSFER_MANAGE = "TRANSFER_MANAGE"
APPROVAL_RULE_MANAGE = "APPROVAL_RULE_MANAGE"

ALL_PERMISSIONS = (
    STOCK_VIEW,
    STOCK_MANAGE,
    TRANSFER_VIEW,
    TRANSFER_MANAGE,
    APPROVAL_RULE_MANAGE,
)
