import logging

"""
Bits & pieces shared by the whole converter.

The logger, the log sink handed to the scheduler and the exceptions a single
file conversion can raise all live here.
"""

logging.basicConfig(level=logging.INFO, format="%(levelname)s - %(message)s")
logger = logging.getLogger('webpconverter')
logging.getLogger('PIL').setLevel(logging.WARNING)


class RunLog:
    """
    Leveled message sink for a conversion run.

    The scheduler only ever talks to one of these, so a run can be pointed at
    another logger (or a test double) without touching the rest of the code.
    """

    def __init__(self, target: logging.Logger = None):
        self.target = target or logger

    def debug(self, message, *args):
        self.target.debug(message, *args)

    def info(self, message, *args):
        self.target.info(message, *args)

    def warning(self, message, *args):
        self.target.warning(message, *args)

    def error(self, message, *args, **kwargs):
        self.target.error(message, *args, **kwargs)


runlog = RunLog()


class ConverterException(Exception):
    """Something went wrong converting one file."""

    kind = "ConversionError"

    def __init__(self, path, message, **kwargs):
        super().__init__(message)
        self.path = path
        self.message = message
        self.additional_info = kwargs.get('additional_info', "")

    def get_message(self):
        message = f"{self.kind}: {self.message} ({self.path})"
        if self.additional_info != "":
            message += " - " + self.additional_info
        return message

    def __str__(self):
        return self.get_message()


class DecodeError(ConverterException):
    kind = "DecodeError"


class EncodeError(ConverterException):
    kind = "EncodeError"


class ConversionIOError(ConverterException):
    kind = "IOError"


class WorkerFailure(ConverterException):
    kind = "WorkerFailure"


# Errors worth one more try with the fallback parameters
RETRYABLE_ERRORS = (DecodeError, EncodeError, WorkerFailure)


def clamp(number, min_val, max_val):
    return max(min(max_val, number), min_val)


SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_size(size: int) -> str:
    value = float(size)
    for unit in SIZE_UNITS:
        if value < 1024 or unit == SIZE_UNITS[-1]:
            break
        value /= 1024
    if unit == "B":
        return f"{int(value)} B"
    return f"{value:.2f} {unit}"


# Simple time formatter based on "Mr. B" - https://stackoverflow.com/a/24542445
INTERVALS = (
    ('hours', 3600),  # 60 * 60
    ('minutes', 60),
    ('seconds', 1),
)


def display_time(seconds, granularity=2):
    result = []

    for name, count in INTERVALS:
        value = seconds // count
        if value:
            seconds -= value * count
            if value == 1:
                name = name.rstrip('s')
            result.append("{:d} {}".format(int(value), name))
    return ', '.join(result[:granularity]) or "less than a second"


def s_suffix(word, count):
    return word if count == 1 else word + "s"
