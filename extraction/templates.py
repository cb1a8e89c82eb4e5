"""Attribute templates per entity type."""
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, FrozenSet

from utils.logger import setup_logger

logger = setup_logger(__name__)

QueryBuilder = Callable[[str, str], List[str]]


@dataclass(frozen=True)
class AnalysisTemplate:
    """Ordered attribute list for one entity type.

    Attributes in ``persistent`` never change during a story and may use
    evidence from anywhere; every other attribute is time-bound.
    """
    entity_type: str
    attributes: List[str]
    build_queries: Optional[QueryBuilder] = None
    persistent: FrozenSet[str] = field(default_factory=frozenset)

    def is_time_bound(self, attribute: str) -> bool:
        return attribute not in self.persistent

    def queries_for(self, entity_name: str, attribute: str) -> List[str]:
        if self.build_queries:
            return self.build_queries(entity_name, attribute)
        return [f"{entity_name} {attribute_words(attribute)}"]


def attribute_words(attribute: str) -> str:
    """camelCase attribute name as lowercase words: hairColor -> hair color."""
    return re.sub(r'([A-Z])', r' \1', attribute).strip().lower()


# Character traits, grouped the way the character pipeline reasons about them
TRAITS_PERSISTENT = [
    'hairColor', 'hairStyleOrLength', 'eyeColor', 'baselineSkinTone',
    'heightOrStature', 'buildOrBodyType', 'ageAppearance',
    'raceOrSpeciesOrHeritage', 'notableFacialFeatures', 'scarsAndTattoos',
]
TRAITS_CLOTHING = ['clothingStyleOrOutfit']
TRAITS_ARMOR = ['armorType', 'shieldOrActiveDefense', 'helmOrHeadgear']
TRAITS_WEAPONS = ['primaryWeapon', 'secondaryWeapon', 'rangedWeapon']
TRAITS_GEAR = ['carriedEquipment', 'accessories']
TRAITS_INJURIES = ['activeInjuriesOrWounds', 'physicalCondition', 'bloodOrGrim']
TRAITS_VIBE = ['generalVibe', 'emotionalState']

TRAITS_TRANSIENT = (
    TRAITS_CLOTHING + TRAITS_ARMOR + TRAITS_WEAPONS
    + TRAITS_GEAR + TRAITS_INJURIES + TRAITS_VIBE
)

CHARACTER_TEMPLATE = AnalysisTemplate(
    entity_type='CHARACTER',
    attributes=TRAITS_PERSISTENT + TRAITS_TRANSIENT,
    persistent=frozenset(TRAITS_PERSISTENT),
)

WEAPON_ATTRIBUTES = [
    'weaponEdgeType', 'weaponBladeProfile', 'weaponCrossSection',
    'weaponPointStyle', 'weaponFullerPresence', 'weaponGuardType',
    'weaponHiltConstruction', 'weaponBalance', 'weaponPommel',
    'weaponGripWrap', 'weaponScabbardMaterials', 'weaponMakerMark',
    'firearmBarrelCount', 'firearmActionType', 'firearmCaliber',
    'firearmMagazineType', 'firearmOptics', 'firearmSuppressor',
    'firearmStockType', 'firearmFeedMechanism',
]

WEAPON_KEYWORDS = [
    'dagger', 'sword', 'blade', 'spear', 'bow', 'gun', 'rifle', 'pistol',
    'axe', 'hammer', 'mace', 'club', 'staff', 'wand', 'knife', 'saber',
    'rapier', 'claymore', 'halberd', 'lance', 'scythe', 'shuriken', 'dart',
    'arrow', 'bolt', 'quiver', 'shield', 'armor', 'helmet', 'gauntlet',
]


def is_weapon_like(entity_name: str, item_type: Optional[str] = None) -> bool:
    """Keyword check on the entity name and its extracted item type."""
    text = f"{entity_name} {item_type or ''}".lower()
    return any(keyword in text for keyword in WEAPON_KEYWORDS)


def _item_queries(name: str, attribute: str) -> List[str]:
    if attribute.startswith('weapon'):
        detail = attribute_words(attribute[len('weapon'):])
        return [
            f"{name} {detail}",
            f"{name} blade details",
            f"{name} single-edged",
            f"{name} double-edged",
            f"{name} one-edged",
            f"{name} two-edged",
            f"{name} sharpened on one side",
            f"{name} sharpened on both sides",
            f"{name} hilt guard pommel",
        ]
    if attribute.startswith('firearm'):
        detail = attribute_words(attribute[len('firearm'):])
        return [
            f"{name} {detail}",
            f"{name} gun specifications",
            f"{name} barrel count",
            f"{name} one barrel",
            f"{name} two barrels",
            f"{name} double-barrel",
            f"{name} six-shooter",
            f"{name} action type",
        ]
    if attribute in ('markingsOrInscriptions', 'weaponMakerMark'):
        return [f"{name} inscription", f"{name} maker mark", f"{name} runes", f"{name} text"]
    return [f"{name} {attribute_words(attribute)}", f"{name} appearance", f"{name} description"]


def _queries_with(*suffixes: str) -> QueryBuilder:
    def build(name: str, attribute: str) -> List[str]:
        return [f"{name} {attribute_words(attribute)}"] + [f"{name} {s}" for s in suffixes]
    return build


ITEM_TEMPLATE = AnalysisTemplate(
    entity_type='ITEM_OR_ARTIFACT',
    attributes=[
        'itemType', 'sizeOrScale', 'materials', 'primaryColorPalette',
        'shapeAndGeometry', 'markingsOrInscriptions', 'craftsmanshipOrStyleEra',
        'conditionOrWear', 'notableFeatures', 'howItIsCarriedOrStored',
        'originOrMaker', 'auraOrEffects', 'vibeOrImpression',
        'activationMethod', 'gemSettings', 'emittedEffects', 'corruptionOrTaint',
        'concealability', 'bindingOrOwnership',
    ] + WEAPON_ATTRIBUTES,
    build_queries=_item_queries,
)

MONSTER_TEMPLATE = AnalysisTemplate(
    entity_type='MONSTER_OR_CREATURE',
    attributes=[
        'speciesType', 'sizeOrScale', 'bodyPlanOrAnatomy', 'skinFurScales',
        'coloration', 'eyes', 'distinctiveFeatures', 'movementStyle',
        'soundsOrSmell', 'woundsOrScars', 'naturalWeapons', 'habitat',
        'vibeOrImpression',
    ],
    build_queries=_queries_with('biology', 'appearance'),
)

LOCATION_TEMPLATE = AnalysisTemplate(
    entity_type='LOCATION',
    attributes=[
        'environmentBiome', 'climateWeatherFeel', 'lighting', 'terrain',
        'architectureOrStructures', 'layoutOrLandmarks', 'smellsOrSounds',
        'hazards', 'vibeOrImpression',
    ],
    build_queries=_queries_with('visual', 'environment'),
)

SCENE_TEMPLATE = AnalysisTemplate(
    entity_type='SCENE_OR_EVENT',
    attributes=[
        'setting', 'timeOfDayOrSeason', 'lighting', 'weather',
        'keyVisualElements', 'focalAction', 'crowdOrParticipants',
        'aftermathOrTraces', 'mood', 'vibeOrImpression',
    ],
    build_queries=_queries_with('description', 'scene'),
)

GROUP_TEMPLATE = AnalysisTemplate(
    entity_type='GROUP_OR_FACTION_OR_ORGANIZATION',
    attributes=[
        'symbolOrSigil', 'colorsOrLivery', 'uniformOrDress', 'rankMarkers',
        'typicalGear', 'baseOrTerritoryStyle', 'reputationVibe',
    ],
    build_queries=_queries_with('uniform', 'symbol'),
)

LANDMARK_TEMPLATE = AnalysisTemplate(
    entity_type='LANDMARK_OR_STRUCTURE',
    attributes=[
        'structureType', 'materials', 'architectureStyle', 'sizeOrScale',
        'conditionOrWear', 'distinctiveFeatures', 'interiorFeel',
        'surroundings', 'vibeOrImpression',
    ],
    build_queries=_queries_with('architecture', 'construction'),
)

BATTLE_TEMPLATE = AnalysisTemplate(
    entity_type='BATTLE_OR_DUEL_OR_CONFLICT',
    attributes=[
        'combatantsPresent', 'weaponsOrMagicSeen', 'terrainOrArena',
        'formationsOrPositions', 'notableMoments', 'damageOrDestruction',
        'injuriesOrCasualties', 'visibilityWeather', 'outcomeEvidence',
        'vibeOrImpression',
    ],
    build_queries=_queries_with('fight', 'battle'),
)

SPELL_TEMPLATE = AnalysisTemplate(
    entity_type='SPELL_OR_POWER_OR_ABILITY',
    attributes=[
        'visualEffectForm', 'colorLight', 'motionPattern', 'soundOrSmell',
        'radiusOrScale', 'castingTell', 'impactOnEnvironment', 'aftereffects',
        'vibeOrImpression',
    ],
    build_queries=_queries_with('visual', 'effect'),
)

VEHICLE_TEMPLATE = AnalysisTemplate(
    entity_type='VEHICLE_OR_MOUNT',
    attributes=[
        'vehicleOrMountType', 'sizeOrScale', 'materials', 'colorOrMarkings',
        'distinctiveFeatures', 'harnessOrTack', 'cargoOrLoadout',
        'conditionOrWear', 'movementStyle', 'vibeOrImpression',
    ],
    build_queries=_queries_with('appearance', 'description'),
)

PROPHECY_TEMPLATE = AnalysisTemplate(
    entity_type='PROPHECY_OR_LEGEND_OR_MYTH',
    attributes=[
        'mediumForm', 'imageryMotifs', 'symbolsOrIconography', 'toneOrMood',
        'associatedPeopleOrPlaces', 'recurringVisualElements', 'vibeOrImpression',
    ],
    build_queries=_queries_with('content', 'text'),
)

ALIEN_TEMPLATE = AnalysisTemplate(
    entity_type='ALIEN',
    attributes=[
        'morphology', 'bodyPlan', 'appendages', 'locomotion',
        'sensoryOrgans', 'skinFurScalesOrSurface', 'coloration',
        'emissionOrGlow', 'sizeOrScale', 'communicationMode',
        'threatLevel', 'originOrRealm', 'abilitiesOrPowers', 'weaknesses',
        'artifactsOrToolsUsed', 'clothingOrWearables', 'auraOrPresence',
        'manifestationRules', 'habitat', 'vibeOrImpression',
    ],
    build_queries=_queries_with('biology', 'appearance', 'details'),
)

ENTITY_TEMPLATE = AnalysisTemplate(
    entity_type='ENTITY',
    attributes=[
        'manifestationType', 'formOrSilhouette', 'sizeOrScale', 'opacityOrDensity',
        'colorLightOrGlow', 'textureOrParticles', 'motionBehavior',
        'sensoryOrgans', 'communicationMode', 'intelligenceLevel',
        'abilitiesOrPowers', 'environmentalInteraction', 'originOrAnchor',
        'auraOrPresence', 'soundOrPresenceEffects', 'weaknesses',
        'manifestationRules', 'vibeOrImpression',
    ],
    build_queries=_queries_with('form', 'manifestation', 'description'),
)

PLANET_TEMPLATE = AnalysisTemplate(
    entity_type='PLANET',
    attributes=[
        'planetType', 'radiusOrScale', 'gravity', 'atmosphere',
        'climateBands', 'weatherPatterns', 'terrainOrSurface',
        'hydrosphereOrLiquids', 'biosphereOrVegetation', 'dominantSpecies',
        'settlementsOrCivilization', 'techLevel', 'hazards',
        'orbitalPeriod', 'axialTilt', 'moons', 'rings',
        'notableLandmarks', 'illuminationOrSkyColor', 'vibeOrImpression',
    ],
    build_queries=lambda name, attribute: [
        f"{name} {attribute_words(attribute)}",
        f"{name} geography",
        f"{name} environment",
        f"{name} atmosphere",
        f"surface of {name}",
    ],
)

STAR_SYSTEM_TEMPLATE = AnalysisTemplate(
    entity_type='STAR_SYSTEM',
    attributes=[
        'starCount', 'starTypesAndColors', 'spectralClasses', 'habitableZone',
        'planetCount', 'systemLayout', 'asteroidBelts', 'nebulaPresence',
        'cosmicAnomalies', 'factionsPresent', 'navigationHazards',
        'jumpPointsOrGateways', 'spaceTraffic', 'overallColorPalette',
        'vibeOrImpression',
    ],
    build_queries=_queries_with('system', 'stellar details', 'astronomy'),
)

SPACE_SHIP_TEMPLATE = AnalysisTemplate(
    entity_type='SPACE_SHIP',
    attributes=[
        'shipClassOrRole', 'scaleOrDimensions', 'hullMaterialAndFinish',
        'propulsionSystem', 'powerSource', 'armament', 'defensesOrShields',
        'crewComplement', 'AIOrAutonomy', 'interiorStyle',
        'dockingInterfaces', 'sensorSuite', 'cargoCapacity',
        'insigniaOrMarkings', 'damageState', 'missionRole',
        'lightingAndEmissives', 'vibeOrImpression',
    ],
    build_queries=_queries_with('specifications', 'hull', 'interior', 'capabilities'),
)

SPACE_STATION_TEMPLATE = AnalysisTemplate(
    entity_type='SPACE_STATION',
    attributes=[
        'stationTypeOrPurpose', 'scaleOrDimensions', 'overallShape',
        'structuralMaterials', 'modulesAndSections', 'dockingBays',
        'powerSource', 'defensiveSystems', 'populationDemographics',
        'interiorLayout', 'gravityGeneration', 'visibleDamageOrDecay',
        'surroundingEnvironment', 'lightingAndSignage', 'vibeOrImpression',
    ],
    build_queries=_queries_with('station', 'exterior', 'structure'),
)

SPACE_ANOMALY_TEMPLATE = AnalysisTemplate(
    entity_type='SPACE_ANOMALY',
    attributes=[
        'anomalyType', 'sizeOrScale', 'stability', 'visualSignature',
        'colorLightAndGlow', 'shapeAndBoundary', 'effectsOnMatter',
        'effectsOnTime', 'radiationOrEnergyOutput', 'gravitationalEffects',
        'entryExitRules', 'visibility', 'detectionMethods',
        'navigationImpact', 'soundOrSensorReadings', 'originHypotheses',
        'containmentOptions', 'vibeOrImpression',
    ],
    build_queries=_queries_with('properties', 'anomaly', 'effects'),
)

REGISTRY = {
    template.entity_type: template
    for template in [
        CHARACTER_TEMPLATE, ITEM_TEMPLATE, MONSTER_TEMPLATE, LOCATION_TEMPLATE,
        SCENE_TEMPLATE, GROUP_TEMPLATE, LANDMARK_TEMPLATE, BATTLE_TEMPLATE,
        SPELL_TEMPLATE, VEHICLE_TEMPLATE, PROPHECY_TEMPLATE, ALIEN_TEMPLATE,
        ENTITY_TEMPLATE, PLANET_TEMPLATE, STAR_SYSTEM_TEMPLATE,
        SPACE_SHIP_TEMPLATE, SPACE_STATION_TEMPLATE, SPACE_ANOMALY_TEMPLATE,
    ]
}

ALIASES = {
    'ITEM': 'ITEM_OR_ARTIFACT',
    'ARTIFACT': 'ITEM_OR_ARTIFACT',
    'WEAPON': 'ITEM_OR_ARTIFACT',
    'CREATURE': 'MONSTER_OR_CREATURE',
    'MONSTER': 'MONSTER_OR_CREATURE',
    'GROUP': 'GROUP_OR_FACTION_OR_ORGANIZATION',
    'FACTION': 'GROUP_OR_FACTION_OR_ORGANIZATION',
    'ORGANIZATION': 'GROUP_OR_FACTION_OR_ORGANIZATION',
    'LANDMARK': 'LANDMARK_OR_STRUCTURE',
    'STRUCTURE': 'LANDMARK_OR_STRUCTURE',
    'SHIP': 'SPACE_SHIP',
    'SPACESHIP': 'SPACE_SHIP',
    'STATION': 'SPACE_STATION',
    'ANOMALY': 'SPACE_ANOMALY',
}


def normalize_entity_type(entity_type: Optional[str]) -> str:
    """Map loose type names onto registry keys; unknown types become ENTITY."""
    key = (entity_type or '').strip().upper().replace(' ', '_')
    if key in ALIASES:
        return ALIASES[key]
    if key in REGISTRY:
        return key
    logger.warning(f"Unknown entity type '{entity_type}', using the generic ENTITY template")
    return 'ENTITY'


def get_template(entity_type: str) -> AnalysisTemplate:
    return REGISTRY.get(entity_type, ENTITY_TEMPLATE)
