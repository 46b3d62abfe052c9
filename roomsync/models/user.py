from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    email: str
    full_name: Optional[str]
