class ConversionError(ValueError):
    """Base error for anything that stops a rule from being translated."""


class UnsupportedFeatureError(ConversionError):
    pass


class UnknownModifierError(ConversionError):
    pass


class InvalidModifierOrderError(ConversionError):
    pass


class UnsupportedAggregationFunctionError(ConversionError):
    pass


class UnresolvedReferenceError(ConversionError):
    pass
