class RuleValidationError(ValueError):
    pass


class CategoryReferenceError(ValueError):
    def __init__(self, category_id: int) -> None:
        super().__init__(f"Category {category_id} no longer exists")
        self.category_id = category_id


class DuplicateMaterializationError(ValueError):
    """Another sweep already created the transaction for this rule and date."""

    def __init__(self, rule_id: int, occurrence_date) -> None:
        super().__init__(
            f"Rule {rule_id} already materialized for {occurrence_date.isoformat()}"
        )
        self.rule_id = rule_id
        self.occurrence_date = occurrence_date


class DuplicateImpactError(ValueError):
    def __init__(self, transaction_id: int) -> None:
        super().__init__(f"Transaction {transaction_id} already has budget impacts")
        self.transaction_id = transaction_id


class TransactionNotFound(ValueError):
    pass


class BudgetNotFound(ValueError):
    pass


class AllocationNotFound(ValueError):
    pass
