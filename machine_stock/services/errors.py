class StockError(Exception):
    status_code = 400


class NotFoundError(StockError):
    status_code = 404


class InvalidStateError(StockError):
    status_code = 409


class DuplicateIdentifierError(StockError):
    status_code = 409


class OriginUndeterminableError(StockError):
    status_code = 422


class DestinationNotFoundError(StockError):
    status_code = 422


class UnknownStatusError(StockError):
    status_code = 400


class InvalidRetentionError(StockError):
    status_code = 400
