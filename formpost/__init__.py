from ._exceptions import (
    FormPostError,
    InvalidArgument,
    IOFailure,
    RequestError,
    UsageError,
)
from ._multipart import (
    DEFAULT_CHUNK_SIZE,
    EncoderState,
    MultipartEncoder,
    create_random_boundary,
    get_content_type,
)
from ._request import (
    FetchRequest,
    FormField,
    HttpClientFacade,
    HttpRequest,
    MatchRequest,
    ReadRequest,
    RequestConfig,
    RequestMethod,
    RequestResult,
    Response,
    SubmissionType,
)

__title__ = "formpost"
__description__ = "Streaming multipart/form-data encoder and form-post HTTP requests."
__version__ = "0.3.0"

try:
    from .cli import main
except ImportError:

    def main() -> None:  # type: ignore[misc]
        import sys

        print(
            'The "formpost" command requires the CLI extra. '
            'Install it with: pip install "formpost[cli]"',
            file=sys.stderr,
        )
        sys.exit(1)


_EXCLUDED_FROM_ALL = {"cli", "main"}

__all__ = sorted(  # pyright: ignore[reportUnsupportedDunderAll]
    (
        member
        for member in list(vars().keys())
        if (
            not member.startswith("_")
            or member in ["__description__", "__title__", "__version__"]
        )
        and member not in _EXCLUDED_FROM_ALL
    ),
    key=str.casefold,
)
