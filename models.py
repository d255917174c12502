# models.py
from pydantic import BaseModel, Field
from typing import List, Optional

class ResolutionDescriptor(BaseModel):
    url: str = Field(..., description="Embed page URL for this resolution")
    resolution: Optional[str] = Field(None, description="Resolution label, e.g. 1080")
    is_dub: bool = Field(False, description="English dub audio track")
    fansub: Optional[str] = Field(None, description="Fansub group")

    class Config:
        from_attributes = True
        frozen = True

class SourceResult(BaseModel):
    url: str = Field(..., description="Manifest (m3u8) URL")
    is_m3u8: bool = Field(..., description="URL points at an HLS manifest")
    resolution: Optional[str] = Field(None, description="Resolution label")
    is_dub: bool = Field(False, description="English dub audio track")
    fansub: Optional[str] = Field(None, description="Fansub group")
    download_url: Optional[str] = Field(None, description="Direct mp4 URL derived from the manifest")

    class Config:
        from_attributes = True

class DownloadLink(BaseModel):
    url: str = Field(..., description="Download button URL")
    text: str = Field(..., description="Original button text")
    fansub: Optional[str] = Field(None, description="Fansub group")
    quality: str = Field(..., description="Quality label, or the full button text when it could not be parsed")
    resolution: Optional[str] = Field(None, description="Resolution digits, e.g. 1080")
    filesize: Optional[str] = Field(None, description="File size, e.g. 350MB")
    is_dub: bool = Field(False, description="English dub audio track")
    download: Optional[str] = Field(None, description="Direct download URL when already known")

    class Config:
        from_attributes = True

class ExternalIds(BaseModel):
    animepahe_id: Optional[int] = Field(None, description="Animepahe numeric id")
    mal_id: Optional[int] = Field(None, description="AniDB / MyAnimeList numeric id")
    anilist_id: Optional[int] = Field(None, description="AniList numeric id")
    anime_planet_id: Optional[int] = Field(None, description="Anime-Planet numeric id")
    ann_id: Optional[int] = Field(None, description="Anime News Network numeric id")
    anilist: Optional[str] = Field(None, description="AniList id as published")
    anime_planet: Optional[str] = Field(None, description="Anime-Planet slug")
    ann: Optional[str] = Field(None, description="Anime News Network id as published")
    kitsu: Optional[str] = Field(None, description="Kitsu id")
    myanimelist: Optional[str] = Field(None, description="MyAnimeList id")

    class Config:
        from_attributes = True

class PlayInfo(BaseModel):
    ids: ExternalIds = Field(default_factory=ExternalIds, description="Cross-reference identifiers")
    title: Optional[str] = Field(None, description="Anime title")
    session: str = Field(..., description="Episode session token")
    provider: str = Field(..., description="Embed provider tag")
    episode: str = Field("", description="Episode number")
    sources: List[SourceResult] = Field(default_factory=list, description="Resolved streaming sources")
    download_links: List[DownloadLink] = Field(default_factory=list, description="Download buttons")

    class Config:
        from_attributes = True

class DirectDownload(BaseModel):
    url: str = Field(..., description="Download button URL that was resolved")
    download_url: str = Field(..., description="Direct file URL")
    resolved_url: Optional[str] = Field(None, description="Intermediate file-host page")

    class Config:
        from_attributes = True

class ErrorResponse(BaseModel):
    error: str = Field(..., description="Error message")
    code: Optional[int] = Field(None, description="HTTP status code")
    details: Optional[str] = Field(None, description="Additional error details")

    class Config:
        from_attributes = True
