from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    email: str
    full_name: Optional[str]


class ProfileDocument(TypedDict, total=False):

    # same id as the owning user
    _id: str
    full_name: Optional[str]
    # storage object key or absolute URL
    avatar_url: Optional[str]
