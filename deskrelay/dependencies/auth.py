from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from deskrelay.participants import Participant, ParticipantRole

bearer_scheme = HTTPBearer(auto_error=False)

_TOKENS: dict[str, Participant] = {
    "customer-token": Participant(id="customer-1", role=ParticipantRole.CUSTOMER, name="Casey Customer"),
    "other-customer-token": Participant(id="customer-2", role=ParticipantRole.CUSTOMER, name="Chris Customer"),
    "engineer-token": Participant(id="engineer-1", role=ParticipantRole.ENGINEER, name="Eden Engineer"),
    "other-engineer-token": Participant(id="engineer-2", role=ParticipantRole.ENGINEER, name="Emery Engineer"),
}


async def get_current_participant(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)]
) -> Participant:
    """Very small authentication stub.

    Static tokens map to known participants. A real deployment would verify
    the token and load the profile from the identity provider.
    """

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authentication credentials")
    participant = _TOKENS.get(credentials.credentials)
    if participant is None:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    return participant


CurrentParticipant = Annotated[Participant, Depends(get_current_participant)]
