# crm_outreach/errors.py


class OutreachNotConfigured(RuntimeError):
    """Channel credentials (or the data store) are not set up."""


class StoreUnavailable(RuntimeError):
    """The data store cannot be reached at all; the run is aborted."""


class TemplateConfigError(RuntimeError):
    """A follow-up step has no WhatsApp template configured."""
