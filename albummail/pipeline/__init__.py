from .batch import Attachment, Batch, pack_batches, batch_size_bytes
from .state import StateStore, StateStoreConfig, DeliveryState, StorageError, has_been_sent, mark_sent
from .fetch import resolve_album, list_assets, fetch_original, ping, ImmichConfig, Asset, FetchError, AlbumNotFoundError
from .convert import convert, build_attachment, attachment_filename, safe_base_name, ConverterConfig, ConversionError
from .deliver import send_batch, build_message, batch_subject, check_login, DelivererConfig, RecipientTarget, SendError

__all__ = [name for name in globals() if not name.startswith('__')]
__version__ = "1.0.0"

"""
Pipeline stages of the album mailer: fetch, convert, pack, deliver and state tracking.
"""
