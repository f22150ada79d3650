"""
prompts.py — Instruction templates for the three analysis stages and the
final render instruction.

Templates are written in Chinese because the generated copy has to be
Chinese (4–8 characters per frame). Placeholders use str.format().
"""

from __future__ import annotations

from typing import List, Tuple

# ── Style decoding ────────────────────────────────────────────────────────────

STYLE_SYSTEM_PROMPT = """\
你是一名资深商业摄影师兼视觉架构师。你的任务是拆解参考图的视觉 DNA，并全部使用中文描述。

必须填写全部 6 个字段，任何字段都不能为空：
- style：风格关键词
- lighting：光源方向、软硬、明暗反差
- color：主色与辅助色
- composition：主体位置、视角与留白
- texture：材质表现与整体氛围
- prompt_prefix：一段可直接放在任何 AI 生图提示词最前面的通用风格前缀

描述要具体、专业、可执行，不要出现英文描述词。
"""

STYLE_USER_PROMPT = "请分析这张参考图的视觉风格，按要求输出 JSON。"


# ── Product analysis ──────────────────────────────────────────────────────────

# (title, focus) — fixed narrative order for detail pages
DETAIL_BEATS: List[Tuple[str, str]] = [
    ("首屏海报", "视觉冲击，一眼建立产品印象"),
    ("信任背书", "实验室、认证或权威背书"),
    ("细节展示", "工艺与精密构造特写"),
    ("痛点对比", "用对比或隐喻呈现用户痛点"),
    ("竞品对比", "与同类产品的差异化优势"),
    ("场景展示", "生活方式场景，激发向往"),
]

# (title, composition) — six distinct full-product compositions for listing images
MAIN_IMAGE_COMPOSITIONS: List[Tuple[str, str]] = [
    ("黄金比例", "产品位于黄金分割点，完整展示"),
    ("对称构图", "产品居中，左右对称，完整展示"),
    ("对角线构图", "产品沿对角线展开，动势明显，完整展示"),
    ("三分法构图", "产品落在三分线交点，完整展示"),
    ("框架构图", "用场景元素形成画框包围完整产品"),
    ("低角度仰拍", "低机位仰视，突出完整产品的体量感"),
]

COPY_RULE = "- 文案（copy 字段）必须高度凝练，控制在 4-8 个汉字，不得超出。"
FONT_RULE = "- 推荐 3-5 个适合全部画面统一使用的字体（global_font_options）。"

DETAIL_SYSTEM_PROMPT = """\
你是一名顶级电商营销专家。
任务：
1. 精确提取产品的物理外观特征（physical_features）。
2. 设计正好 6 个【详情页】视觉分镜，重点是卖点转化与阅读逻辑，顺序必须是：
{beats}

硬性约束：
{copy_rule}

要求：
{font_rule}
- 每个分镜的 id 唯一。
- 输出 JSON。
"""

MAIN_IMAGE_SYSTEM_PROMPT = """\
你是一名顶级电商营销专家兼场景构图大师。
任务：分析产品卖点、材质与目标人群，生成正好 6 套高点击率的营销主图方案。

核心要求：
- 每套方案都必须【完整展示】产品，严禁局部特写或裁切。
- 6 套方案的构图必须彼此明显不同，可参考：{compositions}。
- 文案与画面融为一体，不干扰用户对产品主体的感知。

硬性约束：
{copy_rule}

要求：
{font_rule}
- 每个方案的 id 唯一。
- 输出 JSON。
"""

DETAIL_USER_PROMPT = "请分析这些产品图，为详情页策划 6 个分镜。指令集：{constraints}"

MAIN_IMAGE_USER_PROMPT = (
    "请为这些产品图在【同一个场景】下，生成 6 个【不同构图角度】的营销主图方案。"
    "分析指令：{constraints}"
)

MAIN_IMAGE_USER_PROMPT_WITH_REF = (
    "上一张图是构图参考图：只借鉴它的【构图】，忽略其内容、配色与元素。"
    "基于这个构图，为产品图在【同一个场景】下生成 6 个【不同构图角度】的营销主图方案。"
    "分析指令：{constraints}"
)

COMPOSITION_REF_LABEL = "构图参考图（仅约束构图）："

PLACEHOLDER_FEATURES = "未提取到明显特征"
FALLBACK_FONT = "系统默认字体"


def detail_system_prompt() -> str:
    beats = "\n".join(f"   {i}. {title}（{focus}）" for i, (title, focus) in enumerate(DETAIL_BEATS, 1))
    return DETAIL_SYSTEM_PROMPT.format(beats=beats, copy_rule=COPY_RULE, font_rule=FONT_RULE)


def main_image_system_prompt() -> str:
    compositions = "、".join(title for title, _ in MAIN_IMAGE_COMPOSITIONS)
    return MAIN_IMAGE_SYSTEM_PROMPT.format(
        compositions=compositions, copy_rule=COPY_RULE, font_rule=FONT_RULE
    )


def combine_constraints(selling_points: str, allowed: str, prohibited: str) -> str:
    return f"卖点:{selling_points}, 允许:{allowed}, 禁止:{prohibited}"


# ── Fusion ────────────────────────────────────────────────────────────────────

FUSION_SYSTEM_PROMPT = """\
你是一名顶尖的电商视觉架构师。
任务：把视觉风格与营销分镜融合，为每个分镜写一条可直接用于 AI 生图的 prompt。

- 「营销主图」模式：追求单图的视觉爆发力与光影张力，让画面在搜索结果列表中脱颖而出。
- 「详情页」模式：保证画面的专业感与信息传达清晰。

每个结果的 id、title、concept、copy、font_size、placement、prominence 必须与输入分镜保持一致，
只新写 prompt 字段。结果放在 results 数组中，输出 JSON。
"""

FUSION_USER_TEMPLATE = """\
模式：{mode}
风格DNA：{style}
光影：{lighting}
配色：{color}
构图：{composition}
材质：{texture}
提示词前缀：{prefix}
禁止项：{prohibited}
分镜策划详情：{storyboards}"""

REGENERATE_SYSTEM_PROMPT = """\
你是一名顶尖的电商视觉架构师。
任务：为当前分镜重新写一条更有创意、更具视觉冲击力的生图 prompt。

要求：
- 营销核心（文案、卖点、排版位置）保持不变。
- 在视觉呈现、构图与氛围上大胆创新。
- 直接输出 prompt 纯文本，不要任何解释或格式标记。
"""

REGENERATE_USER_TEMPLATE = """\
模式：{mode}
风格DNA：{style}
提示词前缀：{prefix}
产品物理特征：{features}
禁止项：{prohibited}
当前分镜策划详情：{storyboard}"""


# ── Render instruction ────────────────────────────────────────────────────────

# Line order is fixed: hard constraints (copy, font, style, exclusions,
# layout) come before the open-ended scene description.
RENDER_TEMPLATE = """\
【视觉渲染协议】
模式：{mode}
1. 核心文案：画面中【仅展示】文字内容："{copy}"，不得出现任何其他文字。
2. 字体特征：匹配"{font}"的视觉风格，展现高端感。
3. 视觉协议：{prefix}。风格：{style}。光影：{lighting}。
4. 物理规避：{exclusions}
5. 排版约束：在画面的【{placement}】区域留白，用于后期排版。
6. 产品特征：{features}。场景意境：{scene}。
要求：8k超清，商业大片质感。"""

RENDER_MODE = {"detail": "详情呈现", "main_image": "高点击率营销主图"}
RENDER_PROHIBITED = "【绝对禁止项】严禁在画面中出现“{prohibited}”。确保画面呈现极致无缝、平滑的工业质感。"
RENDER_CLEAN = "保持画面专业极简，视觉纯净。"
