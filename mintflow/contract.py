"""Signatures of the workspace ownership contract calls and events we use."""

MINT_VOICE = "mintVoiceNFT(address,string,uint256,string,string[],string)"
MINT_VIDEO = "mintVideoNFT(address,string,uint256,string,string[],string,string[])"

PURCHASE_AI_ACCESS = "purchaseAIAccess()"
AI_ACCESS_PRICE = "aiAccessPrice()"
CHECK_AI_ACCESS = "checkAIAccess(address)"

OWNER_OF = "ownerOf(uint256)"
GET_CONTENT = "getContent(uint256)"

# getContent returns one struct with these members, in order
CONTENT_FIELDS = [
    "uint8",  # contentType: 0 voice, 1 video, 2 document
    "string",  # ipfsHash
    "uint256",  # duration
    "string",  # roomId
    "address",  # creator
    "uint256",  # timestamp
    "bool",  # isPrivate
    "string[]",  # whitelistedUsers
    "string",  # transcription
    "string[]",  # participants
    "string",  # summary
]

CONTENT_TYPES = {0: "voice", 1: "video", 2: "document"}

# NFTMinted(uint256 indexed tokenId, address indexed creator, string indexed roomId,
#           uint8 contentType, string ipfsHash)
NFT_MINTED = "NFTMinted(uint256,address,string,uint8,string)"
