from types import MappingProxyType

from autosign.src.apple.models import CapabilityOptionKey, CapabilityType

PARENT_APPLICATION_IDENTIFIERS_KEY = "com.apple.developer.parent-application-identifiers"
SIGN_IN_WITH_APPLE_KEY = "com.apple.developer.applesignin"
ICLOUD_CONTAINER_IDENTIFIERS_KEY = "com.apple.developer.icloud-container-identifiers"
ICLOUD_SERVICES_KEY = "com.apple.developer.icloud-services"
UBIQUITY_KVSTORE_IDENTIFIER_KEY = "com.apple.developer.ubiquity-kvstore-identifier"

# Entitlement key -> capability type on the Developer Portal
SERVICE_TYPE_BY_KEY = MappingProxyType(
    {
        "com.apple.security.application-groups": CapabilityType.APP_GROUPS,
        "com.apple.developer.in-app-payments": CapabilityType.APPLE_PAY,
        "com.apple.developer.associated-domains": CapabilityType.ASSOCIATED_DOMAINS,
        "com.apple.developer.healthkit": CapabilityType.HEALTHKIT,
        "com.apple.developer.homekit": CapabilityType.HOMEKIT,
        "com.apple.developer.networking.HotspotConfiguration": CapabilityType.HOT_SPOT,
        "com.apple.InAppPurchase": CapabilityType.IN_APP_PURCHASE,
        "inter-app-audio": CapabilityType.INTER_APP_AUDIO,
        "com.apple.developer.networking.multipath": CapabilityType.MULTIPATH,
        "com.apple.developer.networking.networkextension": CapabilityType.NETWORK_EXTENSIONS,
        "com.apple.developer.nfc.readersession.formats": CapabilityType.NFC_TAG_READING,
        "com.apple.developer.networking.vpn.api": CapabilityType.PERSONAL_VPN,
        "aps-environment": CapabilityType.PUSH_NOTIFICATIONS,
        "com.apple.developer.siri": CapabilityType.SIRIKIT,
        SIGN_IN_WITH_APPLE_KEY: CapabilityType.APPLE_ID_AUTH,
        "com.apple.developer.on-demand-install-capable": CapabilityType.ON_DEMAND_INSTALL_CAPABLE,
        "com.apple.developer.pass-type-identifiers": CapabilityType.WALLET,
        "com.apple.external-accessory.wireless-configuration": CapabilityType.WIRELESS_ACCESSORY_CONFIGURATION,
        "com.apple.developer.default-data-protection": CapabilityType.DATA_PROTECTION,
        ICLOUD_SERVICES_KEY: CapabilityType.ICLOUD,
        "com.apple.developer.authentication-services.autofill-credential-provider": CapabilityType.AUTOFILL_CREDENTIAL_PROVIDER,
        "com.apple.developer.networking.wifi-info": CapabilityType.ACCESS_WIFI_INFORMATION,
        "com.apple.developer.ClassKit-environment": CapabilityType.CLASSKIT,
        "com.apple.developer.coremedia.hls.low-latency": CapabilityType.COREMEDIA_HLS_LOW_LATENCY,
        # Not shown on the Developer Portal
        ICLOUD_CONTAINER_IDENTIFIERS_KEY: CapabilityType.IGNORED,
        "com.apple.developer.ubiquity-container-identifiers": CapabilityType.IGNORED,
        PARENT_APPLICATION_IDENTIFIERS_KEY: CapabilityType.IGNORED,
        # Granted by Apple on request, the profile has to be generated manually
        "com.apple.developer.contacts.notes": CapabilityType.PROFILE_ATTACHED,
        "com.apple.developer.carplay-audio": CapabilityType.PROFILE_ATTACHED,
        "com.apple.developer.carplay-communication": CapabilityType.PROFILE_ATTACHED,
        "com.apple.developer.carplay-charging": CapabilityType.PROFILE_ATTACHED,
        "com.apple.developer.carplay-maps": CapabilityType.PROFILE_ATTACHED,
        "com.apple.developer.carplay-parking": CapabilityType.PROFILE_ATTACHED,
        "com.apple.developer.carplay-quick-ordering": CapabilityType.PROFILE_ATTACHED,
        "com.apple.developer.exposure-notification": CapabilityType.PROFILE_ATTACHED,
    }
)

DATA_PROTECTIONS = MappingProxyType(
    {
        "NSFileProtectionComplete": CapabilityOptionKey.COMPLETE_PROTECTION,
        "NSFileProtectionCompleteUnlessOpen": CapabilityOptionKey.PROTECTED_UNLESS_OPEN,
        "NSFileProtectionCompleteUntilFirstUserAuthentication": CapabilityOptionKey.PROTECTED_UNTIL_FIRST_USER_AUTH,
    }
)

# Capabilities that get enabled, but whose details need to be set on the portal
MANUAL_SETUP_CAPABILITIES = MappingProxyType(
    {
        CapabilityType.APP_GROUPS: "App Groups",
        CapabilityType.APPLE_PAY: "Apple Pay Payment Processing",
        CapabilityType.ICLOUD: "iCloud",
        CapabilityType.APPLE_ID_AUTH: "Sign In with Apple",
    }
)

# Capabilities the API can not create
UNSUPPORTED_CAPABILITIES = MappingProxyType(
    {
        CapabilityType.ON_DEMAND_INSTALL_CAPABLE: "On Demand Install Capable (App Clips)",
        CapabilityType.ODIC_PARENT_BUNDLEID: "Parent Bundle ID",
    }
)
