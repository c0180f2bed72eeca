from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing import List, NamedTuple, Optional
from .config import settings

ABS_ID_PREFIX = "abs-"


def strip_abs_prefix(item_id: str) -> str:
    if item_id.startswith(ABS_ID_PREFIX):
        return item_id[len(ABS_ID_PREFIX):]
    return item_id


class ABSModel(BaseModel):
    # ABS payloads differ between server versions; keep what we know
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AudioFileMetadata(ABSModel):
    filename: Optional[str] = None


class AudioFile(ABSModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    index: int = 0
    ino: str
    duration: float = 0.0
    metadata: AudioFileMetadata = Field(default_factory=AudioFileMetadata)

    @field_validator("index", "duration", mode="before")
    @classmethod
    def _none_as_zero(cls, v):
        return 0 if v is None else v

    @field_validator("ino", mode="before")
    @classmethod
    def _ino_as_str(cls, v):
        return str(v) if v is not None else v


class Author(ABSModel):
    name: str


class BookMetadata(ABSModel):
    title: Optional[str] = None
    author_name: Optional[str] = Field(default=None, alias="authorName")
    authors: List[Author] = Field(default_factory=list)
    series: List[Author] = Field(default_factory=list)
    published_year: Optional[str] = Field(default=None, alias="publishedYear")
    description: Optional[str] = None


class BookMedia(ABSModel):
    metadata: Optional[BookMetadata] = None
    audio_files: List[AudioFile] = Field(default_factory=list, alias="audioFiles")
    duration: Optional[float] = None
    cover_path: Optional[str] = Field(default=None, alias="coverPath")


class UserMedia(ABSModel):
    current_time: float = Field(default=0.0, alias="currentTime")
    duration: float = 0.0
    progress: float = 0.0
    is_finished: bool = Field(default=False, alias="isFinished")
    last_update: Optional[int] = Field(default=None, alias="lastUpdate")
    started_at: Optional[int] = Field(default=None, alias="startedAt")
    finished_at: Optional[int] = Field(default=None, alias="finishedAt")

    @field_validator("current_time", "duration", "progress", mode="before")
    @classmethod
    def _none_as_zero(cls, v):
        return 0.0 if v is None else v


class ProgressSnapshot(ABSModel):
    """Progress as seen on a continue-listening shelf entry."""
    percentage: float = 0.0
    time_left: str = Field(default="", alias="timeLeft")
    duration: float = 0.0
    current_time: float = Field(default=0.0, alias="currentTime")
    is_finished: bool = Field(default=False, alias="isFinished")


class ABSItem(ABSModel):
    """
    A library item as returned by ABS, or a shelf entry pointing at one.
    Ids may carry an "abs-" prefix when they come from a shelf.
    """
    id: str
    media: Optional[BookMedia] = None
    user_media: Optional[UserMedia] = Field(
        default=None,
        validation_alias=AliasChoices("userMedia", "userMediaProgress", "user_media"),
        serialization_alias="userMedia",
    )
    abs_progress: Optional[ProgressSnapshot] = Field(default=None, alias="absProgress")

    @property
    def library_item_id(self) -> str:
        return strip_abs_prefix(self.id)

    @property
    def has_metadata(self) -> bool:
        return self.media is not None and self.media.metadata is not None

    @property
    def title(self) -> Optional[str]:
        if self.has_metadata:
            return self.media.metadata.title
        return None

    def sorted_files(self) -> List[AudioFile]:
        """Audio files ordered by index. Returns a new list every call."""
        if self.media is None:
            return []
        return sorted(self.media.audio_files, key=lambda f: f.index)

    @property
    def known_duration(self) -> float:
        files = self.sorted_files()
        if files:
            return sum(f.duration for f in files)
        if self.media is not None and self.media.duration:
            return self.media.duration
        return 0.0


class Credentials(BaseModel):
    url: Optional[str] = None
    token: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.url) and bool(self.token)

    @property
    def base_url(self) -> str:
        return (self.url or "").rstrip('/')

    @classmethod
    def from_settings(cls) -> "Credentials":
        return cls(url=settings.ABS_BASE_URL, token=settings.ABS_TOKEN)


class EngineStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    playing: bool = False
    current_time: float = 0.0
    duration: float = 0.0
    is_buffering: bool = False


class LocalPosition(NamedTuple):
    file_index: int
    position: float


class PlaybackSessionState(BaseModel):
    current_book: Optional[ABSItem] = None
    current_file_index: int = 0
    is_playing: bool = False
    position: float = 0.0
    duration: float = 0.0
    computed_total_duration: float = 0.0
    playback_rate: float = 1.0
    is_loading: bool = False
    is_player_visible: bool = False
